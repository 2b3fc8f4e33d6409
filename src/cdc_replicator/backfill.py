"""Cursor-driven backfill of historical source data into integration tables."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from .db.repository import IntegrationRepository
from .db.row_store import RowStore
from .errors import (
    CredentialsMissing,
    InvalidPrecondition,
    StoreError,
    UpstreamFetchError,
)
from .models import (
    JOB_ENQUEUED,
    JOB_FAILED,
    JOB_FINISHED,
    JOB_IN_PROGRESS,
    BackfillJob,
    ServiceIntegration,
)
from .replicator.base import PageFetcher, Replicator
from .upsert import UpsertEngine

logger = logging.getLogger(__name__)

ReplicatorFactory = Callable[[ServiceIntegration], Replicator]


class JobScheduler(Protocol):
    """Whatever eventually invokes :meth:`BackfillRunner.run` for a job."""

    def enqueue_backfill(self, job: BackfillJob) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_recursive(
    integrations: IntegrationRepository,
    service_integration: ServiceIntegration,
    *,
    incremental: bool,
    parent_job: Optional[BackfillJob] = None,
) -> BackfillJob:
    """Create a job for ``service_integration`` and one per dependent, recursively."""
    root = integrations.create_backfill_job(
        service_integration.id,
        incremental=incremental,
        parent_job_id=parent_job.id if parent_job is not None else None,
    )
    for dependent in integrations.find_integrations(
        service_integration.organization_id, depends_on_id=service_integration.id
    ):
        create_recursive(integrations, dependent, incremental=incremental, parent_job=root)
    return root


def fully_finished_at(
    integrations: IntegrationRepository, job: BackfillJob
) -> Optional[datetime]:
    """When the job and every descendant finished, or ``None`` if any has not."""
    if job.finished_at is None:
        return None
    finished = [job.finished_at]
    for child in integrations.child_jobs(job):
        child_finished = fully_finished_at(integrations, child)
        if child_finished is None:
            return None
        finished.append(child_finished)
    return max(finished)


def group_status(integrations: IntegrationRepository, job: BackfillJob) -> str:
    """Status of a job group: ``enqueued``, ``inprogress``, ``finished`` or ``failed``."""
    if job.status == JOB_FAILED:
        return JOB_FAILED
    if job.started_at is None:
        return JOB_ENQUEUED
    if fully_finished_at(integrations, job) is not None:
        return JOB_FINISHED
    return JOB_IN_PROGRESS


class BackfillRunner:
    """Drives one :class:`BackfillJob` through the replicator's pages.

    The cursor is persisted after each page is fully applied, so a crashed
    run resumes from the last completed page. Only one run per job may be
    active at a time; the scheduler is responsible for that.
    """

    def __init__(
        self,
        integrations: IntegrationRepository,
        replicator_factory: ReplicatorFactory,
        store: RowStore,
        *,
        scheduler: Optional[JobScheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.integrations = integrations
        self.replicator_factory = replicator_factory
        self.store = store
        self.scheduler = scheduler
        self._clock = clock

    def run(self, job_id: int, *, cancel: Optional[threading.Event] = None) -> BackfillJob:
        job = self.integrations.get_backfill_job(job_id)
        if job.status == JOB_FINISHED:
            logger.info("backfill job %s already finished", job.opaque_id)
            return job

        sint = self.integrations.get_integration(job.service_integration_id)
        replicator = self.replicator_factory(sint)
        if not (replicator.descriptor().supports_backfill and isinstance(replicator, PageFetcher)):
            raise InvalidPrecondition(f"{sint.service_name} does not support backfill")
        replicator.require_dependency()
        if not (sint.backfill_key or sint.backfill_secret or sint.depends_on_id):
            raise CredentialsMissing(
                f"service integration {sint.opaque_id} has no backfill credentials"
            )
        replicator.create_table(self.store)

        started = self._clock()
        job = self.integrations.update_backfill_job(
            job.with_changes(
                status=JOB_IN_PROGRESS, started_at=job.started_at or started, error=""
            )
        )
        last_backfilled = sint.last_backfilled_at if job.incremental else None
        logger.info(
            "backfill job %s started for %s (incremental=%s, cursor=%s)",
            job.opaque_id,
            sint.opaque_id,
            job.incremental,
            job.cursor,
        )

        engine = UpsertEngine(replicator, self.store)
        items = 0
        pages = 0
        cursor = job.cursor
        while True:
            if cancel is not None and cancel.is_set():
                logger.info("backfill job %s cancelled at cursor %s", job.opaque_id, cursor)
                return job
            try:
                page = replicator.fetch_page(cursor, last_backfilled=last_backfilled)
                for item in page.items:
                    engine.upsert(item)
            except (UpstreamFetchError, StoreError, ValueError, KeyError, TypeError) as exc:
                logger.error("backfill job %s failed: %s", job.opaque_id, exc)
                self.integrations.update_backfill_job(
                    job.with_changes(status=JOB_FAILED, error=str(exc))
                )
                raise
            cursor = page.next_cursor
            job = self.integrations.update_backfill_job(job.with_changes(cursor=cursor))
            pages += 1
            items += len(page.items)
            logger.info(
                "backfill job %s applied page %d (%d items, next cursor %s)",
                job.opaque_id,
                pages,
                len(page.items),
                cursor,
            )
            if not page.items or not cursor:
                break

        job = self.integrations.update_backfill_job(
            job.with_changes(status=JOB_FINISHED, finished_at=self._clock(), cursor=None)
        )
        if job.incremental:
            current = self.integrations.get_integration(sint.id)
            self.integrations.update_integration(
                current.with_changes(last_backfilled_at=started)
            )
        logger.info(
            "backfill job %s finished: %d items across %d pages", job.opaque_id, items, pages
        )
        self._enqueue_children(job)
        return job

    def _enqueue_children(self, job: BackfillJob) -> List[BackfillJob]:
        children = self.integrations.child_jobs(job)
        if self.scheduler is None:
            return children
        for child in children:
            self.scheduler.enqueue_backfill(child)
        return children


__all__ = [
    "BackfillRunner",
    "JobScheduler",
    "create_recursive",
    "fully_finished_at",
    "group_status",
]
