"""Control-plane entities: organizations, service integrations, backfill jobs."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

_ALPHABET = string.digits + string.ascii_lowercase

JOB_ENQUEUED = "enqueued"
JOB_IN_PROGRESS = "inprogress"
JOB_FINISHED = "finished"
JOB_FAILED = "failed"


def new_opaque_id(prefix: str) -> str:
    """Return a random external reference like ``svi_3k9x...``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(24))
    return f"{prefix}_{suffix}"


@dataclass(frozen=True)
class Organization:
    id: int
    key: str
    name: str
    replication_schema: str = "public"


@dataclass(frozen=True)
class ServiceIntegration:
    """Binding between an organization and one external data source."""

    id: int
    opaque_id: str
    organization_id: int
    service_name: str
    table_name: str
    api_url: str = ""
    backfill_key: str = ""
    backfill_secret: str = ""
    webhook_secret: str = ""
    depends_on_id: Optional[int] = None
    last_backfilled_at: Optional[datetime] = None
    skip_webhook_verification: bool = False

    def with_changes(self, **changes) -> "ServiceIntegration":
        return replace(self, **changes)

    @property
    def unauthed_webhook_path(self) -> str:
        return f"/v1/service_integrations/{self.opaque_id}"


@dataclass(frozen=True)
class BackfillJob:
    """One resumable run of backfilling a single integration."""

    id: int
    opaque_id: str
    service_integration_id: int
    incremental: bool
    cursor: Optional[str] = None
    status: str = JOB_ENQUEUED
    parent_job_id: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: str = ""

    def with_changes(self, **changes) -> "BackfillJob":
        return replace(self, **changes)

    @property
    def finished(self) -> bool:
        return self.status == JOB_FINISHED


def default_table_name(service_name: str, opaque_id: str) -> str:
    """Derive a table name unique within an organization."""
    _, _, suffix = opaque_id.partition("_")
    return f"{service_name}_{(suffix or opaque_id)[:8]}"


__all__ = [
    "BackfillJob",
    "JOB_ENQUEUED",
    "JOB_FAILED",
    "JOB_FINISHED",
    "JOB_IN_PROGRESS",
    "Organization",
    "ServiceIntegration",
    "default_table_name",
    "new_opaque_id",
]
