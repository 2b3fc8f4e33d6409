"""Ordering-safe upserts of normalized payloads into an integration's table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .db.row_store import UPSERT_INSERTED, UPSERT_STALE, RowStore
from .errors import UpstreamFetchError
from .replicator.base import EnrichmentSource, NormalizedRow, Replicator
from .replicator.columns import DATA_COLUMN, TableSchema

logger = logging.getLogger(__name__)

DIFF_INSERTED = "inserted"
DIFF_UPDATED = "updated"
DIFF_REJECTED = "rejected"
DIFF_SKIPPED = "skipped"

REJECTED_STALE = "stale"


@dataclass(frozen=True)
class UpsertDiff:
    """What a single upsert did to the stored row."""

    status: str  # inserted | updated | rejected | skipped
    external_id: Any = None
    reason: str = ""
    changed_fields: Tuple[str, ...] = ()
    row: Optional[Dict[str, Any]] = None
    enrichment_error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.status in (DIFF_INSERTED, DIFF_UPDATED)

    @property
    def stale(self) -> bool:
        return self.status == DIFF_REJECTED and self.reason == REJECTED_STALE


def _changed_fields(
    previous: Optional[Mapping[str, Any]], values: Mapping[str, Any]
) -> Tuple[str, ...]:
    if previous is None:
        return tuple(values)
    return tuple(name for name, value in values.items() if previous.get(name) != value)


class UpsertEngine:
    """Applies normalized rows through the store's conditional write.

    The compare-and-write happens inside the store (one conditional statement
    under a row lock), so concurrent upserts for one external id can never
    leave an older ``last_modified`` at rest.
    """

    def __init__(self, replicator: Replicator, store: RowStore) -> None:
        self.replicator = replicator
        self.store = store

    def upsert(self, payload: Mapping[str, Any]) -> UpsertDiff:
        normalized = self.replicator.normalize(payload)
        if normalized is None:
            return UpsertDiff(DIFF_SKIPPED)
        return self.upsert_normalized(normalized)

    def upsert_normalized(self, normalized: NormalizedRow) -> UpsertDiff:
        schema = self.replicator.table_schema()
        values: Dict[str, Any] = {schema.key_column.name: normalized.external_id}
        values.update(normalized.columns)
        values[DATA_COLUMN] = dict(normalized.data)

        with self.store.transaction():
            outcome = self.store.upsert_row(schema, values)
            if outcome.status == UPSERT_STALE:
                logger.debug(
                    "stale write to %s for %s rejected",
                    schema.table_name,
                    normalized.external_id,
                )
                return UpsertDiff(
                    DIFF_REJECTED,
                    external_id=normalized.external_id,
                    reason=REJECTED_STALE,
                    row=outcome.previous,
                )
            status = DIFF_INSERTED if outcome.status == UPSERT_INSERTED else DIFF_UPDATED
            changed = _changed_fields(outcome.previous, values)
            row = outcome.row
            enrichment_error = None
            if isinstance(self.replicator, EnrichmentSource):
                row, enrichment_error = self._enrich(schema, normalized, row)

        return UpsertDiff(
            status,
            external_id=normalized.external_id,
            changed_fields=changed,
            row=row,
            enrichment_error=enrichment_error,
        )

    def _enrich(
        self,
        schema: TableSchema,
        normalized: NormalizedRow,
        row: Optional[Dict[str, Any]],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        replicator = self.replicator
        try:
            enrichment = replicator.fetch_enrichment(normalized)
        except UpstreamFetchError as exc:
            if replicator.enrichment_required:
                logger.error(
                    "required enrichment for %s in %s failed: %s",
                    normalized.external_id,
                    schema.table_name,
                    exc,
                )
                raise
            logger.warning(
                "enrichment for %s in %s failed: %s",
                normalized.external_id,
                schema.table_name,
                exc,
            )
            return row, str(exc)
        if not enrichment:
            return row, None
        values = replicator.enrichment_columns(enrichment)
        if not values:
            return row, None
        updated = self.store.update_row(schema, normalized.external_id, values)
        return updated if updated is not None else row, None


__all__ = [
    "DIFF_INSERTED",
    "DIFF_REJECTED",
    "DIFF_SKIPPED",
    "DIFF_UPDATED",
    "REJECTED_STALE",
    "UpsertDiff",
    "UpsertEngine",
]
