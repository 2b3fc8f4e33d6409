"""Incremental purge of expired rows from large, continuously written tables.

Deleting every expired row with one statement would scan the whole
candidate range under a long lock. Instead the retention band is walked in
small time increments, and each increment is deleted in bounded chunks
(``DELETE ... WHERE pk IN (SELECT pk ... LIMIT n)``), every chunk in its own
transaction with sequential scans disabled so the timestamp index is used.
Autovacuum is paused for the table while the run is in progress and always
restored afterwards.

Callers must serialize runs per table: the autovacuum toggle is table-global.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from .db.row_store import RowStore, RowWindow
from .errors import InvalidPrecondition
from .replicator.base import Replicator, StaleRowPolicy, StaleRowSource

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_INCREMENT = timedelta(hours=1)


@dataclass(frozen=True)
class DeletionSummary:
    deleted: int = 0
    windows: int = 0
    statements: int = 0
    cancelled: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StaleRowDeleter:
    """Runs one exclusive deletion pass against a single table."""

    def __init__(
        self,
        store: RowStore,
        table_name: str,
        policy: StaleRowPolicy,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        increment: timedelta = DEFAULT_INCREMENT,
        now: Callable[[], datetime] = _utcnow,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        if policy.ceiling <= policy.floor:
            raise ValueError("stale row ceiling must be greater than the floor")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if increment <= timedelta(0):
            raise ValueError("increment must be positive")
        self.store = store
        self.table_name = table_name
        self.policy = policy
        self.chunk_size = chunk_size
        self.increment = increment
        self._now = now
        self._cancel = cancel

    @classmethod
    def for_replicator(
        cls,
        replicator: Replicator,
        store: RowStore,
        *,
        settings: Optional["Settings"] = None,
        **kwargs,
    ) -> "StaleRowDeleter":
        """Build a deleter from the replicator's policy and deployment overrides."""
        if not isinstance(replicator, StaleRowSource):
            raise InvalidPrecondition(
                f"{replicator.descriptor().name} does not define stale rows"
            )
        policy = replicator.stale_row_policy()
        if settings is not None:
            if settings.stale_row_floor_days is not None:
                policy = replace(policy, floor=timedelta(days=settings.stale_row_floor_days))
            if settings.stale_row_ceiling_days is not None:
                policy = replace(
                    policy, ceiling=timedelta(days=settings.stale_row_ceiling_days)
                )
            kwargs.setdefault("chunk_size", settings.stale_row_chunk_size)
            kwargs.setdefault(
                "increment", timedelta(hours=settings.stale_row_increment_hours)
            )
        return cls(store, replicator.service_integration.table_name, policy, **kwargs)

    # ------------------------------------------------------------------ entry points
    def run(self) -> DeletionSummary:
        """Delete expired rows whose age lies in ``[floor, ceiling)``."""
        now = self._now()
        start = now - self.policy.ceiling
        cutoff = now - self.policy.floor
        with self._autovacuum_paused():
            summary = self._walk(start, cutoff, start_inclusive=False)
        self._log_summary("run", summary)
        return summary

    def run_initial(self) -> DeletionSummary:
        """Delete every expired row older than the floor, with no upper age bound."""
        now = self._now()
        cutoff = now - self.policy.floor
        earliest = self.store.min_value(self.table_name, self.policy.timestamp_column)
        if earliest is None:
            logger.info("no rows in %s; nothing to delete", self.table_name)
            return DeletionSummary()
        with self._autovacuum_paused():
            summary = self._walk(earliest, cutoff, start_inclusive=True)
        self._log_summary("initial run", summary)
        return summary

    # ------------------------------------------------------------------ internals
    @contextmanager
    def _autovacuum_paused(self) -> Iterator[None]:
        try:
            self.store.set_autovacuum(self.table_name, False)
            logger.info("autovacuum disabled on %s", self.table_name)
            yield
        finally:
            self.store.set_autovacuum(self.table_name, True)
            logger.info("autovacuum re-enabled on %s", self.table_name)

    def _walk(
        self, start: datetime, cutoff: datetime, *, start_inclusive: bool
    ) -> DeletionSummary:
        deleted = windows = statements = 0
        at = start
        inclusive = start_inclusive
        while at < cutoff:
            if self._cancel is not None and self._cancel.is_set():
                logger.info("stale row deletion on %s cancelled", self.table_name)
                return DeletionSummary(deleted, windows, statements, cancelled=True)
            window_end = min(at + self.increment, cutoff)
            window = RowWindow(
                column=self.policy.timestamp_column,
                start=at,
                end=window_end,
                start_inclusive=inclusive,
                conditions=self.policy.conditions,
            )
            window_deleted, window_statements = self._delete_window(window)
            logger.debug(
                "deleted %d rows from %s in (%s, %s]",
                window_deleted,
                self.table_name,
                at.isoformat(),
                window_end.isoformat(),
            )
            deleted += window_deleted
            statements += window_statements
            windows += 1
            at = window_end
            inclusive = False
        return DeletionSummary(deleted, windows, statements)

    def _delete_window(self, window: RowWindow) -> tuple[int, int]:
        deleted = statements = 0
        while True:
            with self.store.session_option("enable_seqscan", "off"):
                count = self.store.delete_where(self.table_name, window, self.chunk_size)
            deleted += count
            statements += 1
            if count < self.chunk_size:
                return deleted, statements

    def _log_summary(self, label: str, summary: DeletionSummary) -> None:
        logger.info(
            "stale row %s on %s deleted %d rows across %d windows (%d statements)%s",
            label,
            self.table_name,
            summary.deleted,
            summary.windows,
            summary.statements,
            " [cancelled]" if summary.cancelled else "",
        )


__all__ = ["DEFAULT_CHUNK_SIZE", "DEFAULT_INCREMENT", "DeletionSummary", "StaleRowDeleter"]
