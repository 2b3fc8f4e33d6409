"""Runtime wiring: webhook handling, backfill and maintenance entry points, CLI."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from collections import deque
from typing import Callable, Deque, List, Optional, Union

from .backfill import BackfillRunner, JobScheduler, create_recursive
from .config import Settings, load_settings
from .db import connect_from_settings
from .db.repository import (
    InMemoryIntegrationRepository,
    IntegrationRepository,
    PostgresIntegrationRepository,
)
from .db.row_store import InMemoryRowStore, PostgresRowStore, RowStore
from .dependencies import DependencyGraphManager
from .errors import DependencyMissing, NotFound, ReplicatorError, ValidationRejected
from .models import BackfillJob, ServiceIntegration
from .replicator.base import CredentialVerificationResult, Replicator, ReplicatorContext
from .replicator.registry import Registry, load_replicators
from .replicator.state_machine import StateMachineStep
from .replicator.webhooks import WebhookRequest, WebhookResponse
from .source_api import SourceApiClient
from .stale_rows import DeletionSummary, StaleRowDeleter
from .upsert import UpsertDiff, UpsertEngine

logger = logging.getLogger(__name__)

IntegrationRef = Union[int, str]


class LocalJobQueue:
    """In-process FIFO of backfill job ids, drained by the CLI."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Deque[int] = deque()

    def enqueue_backfill(self, job: BackfillJob) -> None:
        with self._lock:
            self._pending.append(job.id)
        logger.info("enqueued backfill job %s", job.opaque_id)

    def pending(self) -> List[int]:
        with self._lock:
            return list(self._pending)

    def drain(self, run: Callable[[int], object]) -> int:
        """Run queued jobs, including any enqueued while draining."""
        ran = 0
        while True:
            with self._lock:
                if not self._pending:
                    return ran
                job_id = self._pending.popleft()
            run(job_id)
            ran += 1


class ReplicationService:
    """Resolves integrations to replicators and runs the engine's operations."""

    def __init__(
        self,
        settings: Settings,
        integrations: IntegrationRepository,
        store: RowStore,
        *,
        registry: Optional[Registry] = None,
        source_api: Optional[SourceApiClient] = None,
        scheduler: Optional[JobScheduler] = None,
    ) -> None:
        self.settings = settings
        self.integrations = integrations
        self.store = store
        self.registry = registry or load_replicators()
        self.scheduler = scheduler or LocalJobQueue()
        self.source_api = source_api or SourceApiClient(
            timeout_seconds=settings.source_http_timeout_seconds
        )
        self.context = ReplicatorContext(
            integrations=integrations,
            registry=self.registry,
            source_api=self.source_api,
            api_base_url=settings.api_base_url,
        )
        self.dependencies = DependencyGraphManager(
            integrations, self.registry, scheduler=self.scheduler
        )
        self.backfills = BackfillRunner(
            integrations, self.replicator_for, store, scheduler=self.scheduler
        )
        self._connection = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ReplicationService":
        """Build in-memory stores for DB_MODE=mock, Postgres ones for DB_MODE=local."""
        if settings.db_mode != "local":
            logger.info("DB_MODE=%s; using in-memory stores", settings.db_mode)
            return cls(
                settings, InMemoryIntegrationRepository(), InMemoryRowStore(), **kwargs
            )
        conn = connect_from_settings(settings)
        service = cls(
            settings,
            PostgresIntegrationRepository(conn),
            PostgresRowStore(conn, schema=settings.replication_schema),
            **kwargs,
        )
        service._connection = conn
        return service

    def close(self) -> None:
        self.source_api.close()
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None

    # ------------------------------------------------------------------ lookup
    def replicator_for(self, sint: ServiceIntegration) -> Replicator:
        return self.registry.create(sint, self.context)

    def resolve(self, ref: IntegrationRef) -> ServiceIntegration:
        if isinstance(ref, str):
            return self.integrations.get_integration_by_opaque_id(ref)
        return self.integrations.get_integration(ref)

    # ------------------------------------------------------------------ webhooks
    def handle_webhook(self, opaque_id: str, request: WebhookRequest) -> WebhookResponse:
        try:
            sint = self.integrations.get_integration_by_opaque_id(opaque_id)
        except NotFound:
            return WebhookResponse(status=404, body={"message": "no integration with that id"})
        replicator = self.replicator_for(sint)
        try:
            replicator.require_dependency()
            response = replicator.validate_webhook(request)
            response.raise_for_rejection()
        except DependencyMissing as exc:
            logger.info("webhook for %s refused: %s", opaque_id, exc)
            return WebhookResponse(status=409, body={"message": str(exc)})
        except ValidationRejected as exc:
            logger.info("webhook for %s %s", opaque_id, exc)
            return response

        try:
            self.upsert_webhook(replicator, request.json())
        except (ValueError, KeyError, TypeError) as exc:
            logger.info("webhook for %s has an unusable body: %s", opaque_id, exc)
            return WebhookResponse(status=400, body={"message": f"unprocessable body: {exc}"})
        return response

    def upsert_webhook(self, replicator: Replicator, payload) -> UpsertDiff:
        if not self.store.table_exists(replicator.service_integration.table_name):
            replicator.create_table(self.store)
        diff = UpsertEngine(replicator, self.store).upsert(payload)
        if diff.changed:
            self.dependencies.notify_dependents(replicator, diff, self.replicator_for)
        return diff

    # ------------------------------------------------------------------ backfill
    def create_backfill(
        self, ref: IntegrationRef, *, incremental: bool = False, cascade: bool = False
    ) -> BackfillJob:
        sint = self.resolve(ref)
        if cascade:
            job = create_recursive(self.integrations, sint, incremental=incremental)
        else:
            job = self.integrations.create_backfill_job(sint.id, incremental=incremental)
        self.scheduler.enqueue_backfill(job)
        return job

    def run_backfill(
        self, job_ref: IntegrationRef, *, cancel: Optional[threading.Event] = None
    ) -> BackfillJob:
        if isinstance(job_ref, str):
            job_ref = self.integrations.get_backfill_job_by_opaque_id(job_ref).id
        return self.backfills.run(job_ref, cancel=cancel)

    def build_dependents(self, ref: IntegrationRef) -> List[ServiceIntegration]:
        return self.dependencies.build_dependents(self.resolve(ref))

    # ------------------------------------------------------------------ maintenance
    def delete_stale_rows(
        self,
        ref: IntegrationRef,
        *,
        initial: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> DeletionSummary:
        replicator = self.replicator_for(self.resolve(ref))
        deleter = StaleRowDeleter.for_replicator(
            replicator, self.store, settings=self.settings, cancel=cancel
        )
        return deleter.run_initial() if initial else deleter.run()

    # ------------------------------------------------------------------ onboarding
    def calculate_webhook_state_machine(self, ref: IntegrationRef) -> StateMachineStep:
        return self.replicator_for(self.resolve(ref)).calculate_webhook_state_machine()

    def calculate_backfill_state_machine(self, ref: IntegrationRef) -> StateMachineStep:
        return self.replicator_for(self.resolve(ref)).calculate_backfill_state_machine()

    def process_state_change(
        self, ref: IntegrationRef, field: str, value: str
    ) -> StateMachineStep:
        return self.replicator_for(self.resolve(ref)).process_state_change(field, value)

    def verify_backfill_credentials(self, ref: IntegrationRef) -> CredentialVerificationResult:
        return self.replicator_for(self.resolve(ref)).verify_backfill_credentials()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cdc-replicator", description="Replicator jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backfill_parser = subparsers.add_parser("backfill", help="Run a backfill job")
    backfill_parser.add_argument("job", help="Backfill job opaque id")

    stale_parser = subparsers.add_parser(
        "delete-stale-rows", help="Purge expired rows from an integration's table"
    )
    stale_parser.add_argument("integration", help="Service integration opaque id")
    stale_parser.add_argument(
        "--initial",
        action="store_true",
        help="Delete every expired row older than the floor, not only the recent band",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entrypoint used by both python -m and the console script hook."""
    args = _build_parser().parse_args(argv)
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    service = ReplicationService.from_settings(settings)
    try:
        if args.command == "backfill":
            job = service.run_backfill(args.job)
            ran = service.scheduler.drain(service.run_backfill)
            print(f"Backfill job {job.opaque_id} {job.status}; {ran} child jobs run")
        else:
            summary = service.delete_stale_rows(args.integration, initial=args.initial)
            print(f"Deleted {summary.deleted} stale rows")
    except ReplicatorError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
