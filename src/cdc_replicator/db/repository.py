"""Control-plane persistence: organizations, service integrations, backfill jobs."""

from __future__ import annotations

from dataclasses import fields
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Protocol

from psycopg2 import Error

from ..errors import NotFound, StoreError
from ..models import (
    BackfillJob,
    Organization,
    ServiceIntegration,
    default_table_name,
    new_opaque_id,
)
from . import Connection


class IntegrationRepository(Protocol):
    def create_organization(
        self, key: str, name: str, *, replication_schema: str = "public"
    ) -> Organization: ...

    def get_organization(self, organization_id: int) -> Organization: ...

    def create_integration(
        self, organization_id: int, service_name: str, **attrs: Any
    ) -> ServiceIntegration: ...

    def get_integration(self, integration_id: int) -> ServiceIntegration: ...

    def get_integration_by_opaque_id(self, opaque_id: str) -> ServiceIntegration: ...

    def update_integration(self, integration: ServiceIntegration) -> ServiceIntegration: ...

    def find_integrations(
        self,
        organization_id: int,
        *,
        service_name: Optional[str] = None,
        depends_on_id: Optional[int] = None,
    ) -> List[ServiceIntegration]: ...

    def create_backfill_job(
        self,
        service_integration_id: int,
        *,
        incremental: bool,
        parent_job_id: Optional[int] = None,
    ) -> BackfillJob: ...

    def get_backfill_job(self, job_id: int) -> BackfillJob: ...

    def get_backfill_job_by_opaque_id(self, opaque_id: str) -> BackfillJob: ...

    def update_backfill_job(self, job: BackfillJob) -> BackfillJob: ...

    def child_jobs(self, job: BackfillJob) -> List[BackfillJob]: ...


_INTEGRATION_ATTRS = frozenset(
    f.name
    for f in fields(ServiceIntegration)
    if f.name not in {"id", "opaque_id", "organization_id", "service_name"}
)


def _check_attrs(attrs: Mapping[str, Any]) -> None:
    unknown = set(attrs) - _INTEGRATION_ATTRS
    if unknown:
        raise TypeError(f"unknown integration attributes: {', '.join(sorted(unknown))}")


class InMemoryIntegrationRepository:
    """Volatile control-plane store used when DB_MODE=mock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._organizations: Dict[int, Organization] = {}
        self._integrations: Dict[int, ServiceIntegration] = {}
        self._jobs: Dict[int, BackfillJob] = {}
        self._next_id = {"organization": 1, "integration": 1, "job": 1}

    def _allocate(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    # ------------------------------------------------------------------ organizations
    def create_organization(
        self, key: str, name: str, *, replication_schema: str = "public"
    ) -> Organization:
        with self._lock:
            if any(org.key == key for org in self._organizations.values()):
                raise StoreError(f"organization key {key!r} already exists")
            org = Organization(
                id=self._allocate("organization"),
                key=key,
                name=name,
                replication_schema=replication_schema,
            )
            self._organizations[org.id] = org
            return org

    def get_organization(self, organization_id: int) -> Organization:
        with self._lock:
            try:
                return self._organizations[organization_id]
            except KeyError:
                raise NotFound(f"organization {organization_id} not found") from None

    # ------------------------------------------------------------------ integrations
    def create_integration(
        self, organization_id: int, service_name: str, **attrs: Any
    ) -> ServiceIntegration:
        _check_attrs(attrs)
        with self._lock:
            if organization_id not in self._organizations:
                raise NotFound(f"organization {organization_id} not found")
            opaque_id = new_opaque_id("svi")
            attrs.setdefault("table_name", default_table_name(service_name, opaque_id))
            integration = ServiceIntegration(
                id=self._allocate("integration"),
                opaque_id=opaque_id,
                organization_id=organization_id,
                service_name=service_name,
                **attrs,
            )
            self._integrations[integration.id] = integration
            return integration

    def get_integration(self, integration_id: int) -> ServiceIntegration:
        with self._lock:
            try:
                return self._integrations[integration_id]
            except KeyError:
                raise NotFound(f"service integration {integration_id} not found") from None

    def get_integration_by_opaque_id(self, opaque_id: str) -> ServiceIntegration:
        with self._lock:
            for integration in self._integrations.values():
                if integration.opaque_id == opaque_id:
                    return integration
        raise NotFound(f"service integration {opaque_id} not found")

    def update_integration(self, integration: ServiceIntegration) -> ServiceIntegration:
        with self._lock:
            if integration.id not in self._integrations:
                raise NotFound(f"service integration {integration.id} not found")
            self._integrations[integration.id] = integration
            return integration

    def find_integrations(
        self,
        organization_id: int,
        *,
        service_name: Optional[str] = None,
        depends_on_id: Optional[int] = None,
    ) -> List[ServiceIntegration]:
        with self._lock:
            found = [
                sint
                for sint in self._integrations.values()
                if sint.organization_id == organization_id
                and (service_name is None or sint.service_name == service_name)
                and (depends_on_id is None or sint.depends_on_id == depends_on_id)
            ]
        return sorted(found, key=lambda sint: sint.id)

    # ------------------------------------------------------------------ jobs
    def create_backfill_job(
        self,
        service_integration_id: int,
        *,
        incremental: bool,
        parent_job_id: Optional[int] = None,
    ) -> BackfillJob:
        with self._lock:
            if service_integration_id not in self._integrations:
                raise NotFound(f"service integration {service_integration_id} not found")
            job = BackfillJob(
                id=self._allocate("job"),
                opaque_id=new_opaque_id("bfj"),
                service_integration_id=service_integration_id,
                incremental=incremental,
                parent_job_id=parent_job_id,
            )
            self._jobs[job.id] = job
            return job

    def get_backfill_job(self, job_id: int) -> BackfillJob:
        with self._lock:
            try:
                return self._jobs[job_id]
            except KeyError:
                raise NotFound(f"backfill job {job_id} not found") from None

    def get_backfill_job_by_opaque_id(self, opaque_id: str) -> BackfillJob:
        with self._lock:
            for job in self._jobs.values():
                if job.opaque_id == opaque_id:
                    return job
        raise NotFound(f"backfill job {opaque_id} not found")

    def update_backfill_job(self, job: BackfillJob) -> BackfillJob:
        with self._lock:
            if job.id not in self._jobs:
                raise NotFound(f"backfill job {job.id} not found")
            self._jobs[job.id] = job
            return job

    def child_jobs(self, job: BackfillJob) -> List[BackfillJob]:
        with self._lock:
            children = [j for j in self._jobs.values() if j.parent_job_id == job.id]
        return sorted(children, key=lambda j: j.id)


_INTEGRATION_COLUMNS = """
    id,
    opaque_id,
    organization_id,
    service_name,
    table_name,
    api_url,
    backfill_key,
    backfill_secret,
    webhook_secret,
    depends_on_id,
    last_backfilled_at,
    skip_webhook_verification
"""

_JOB_COLUMNS = """
    id,
    opaque_id,
    service_integration_id,
    incremental,
    cursor,
    status,
    parent_job_id,
    started_at,
    finished_at,
    error
"""


def _integration_from_row(row: Mapping[str, Any]) -> ServiceIntegration:
    return ServiceIntegration(**{f.name: row[f.name] for f in fields(ServiceIntegration)})


def _job_from_row(row: Mapping[str, Any]) -> BackfillJob:
    return BackfillJob(**{f.name: row[f.name] for f in fields(BackfillJob)})


class PostgresIntegrationRepository:
    """Control-plane store on the operator database (DB_MODE=local)."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def _fetch_one(self, query: str, params, what: str) -> Optional[Dict[str, Any]]:
        try:
            return self.conn.execute(query, params).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"{what} failed: {exc}") from exc

    def _fetch_all(self, query: str, params, what: str) -> List[Dict[str, Any]]:
        try:
            return self.conn.execute(query, params).fetchall()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"{what} failed: {exc}") from exc

    # ------------------------------------------------------------------ organizations
    def create_organization(
        self, key: str, name: str, *, replication_schema: str = "public"
    ) -> Organization:
        row = self._fetch_one(
            """
            INSERT INTO organizations (key, name, replication_schema)
            VALUES (%s, %s, %s)
            RETURNING id, key, name, replication_schema
            """,
            (key, name, replication_schema),
            "organization insert",
        )
        return Organization(**row)

    def get_organization(self, organization_id: int) -> Organization:
        row = self._fetch_one(
            """
            SELECT id, key, name, replication_schema
              FROM organizations
             WHERE id = %s
            """,
            (organization_id,),
            "organization lookup",
        )
        if row is None:
            raise NotFound(f"organization {organization_id} not found")
        return Organization(**row)

    # ------------------------------------------------------------------ integrations
    def create_integration(
        self, organization_id: int, service_name: str, **attrs: Any
    ) -> ServiceIntegration:
        _check_attrs(attrs)
        opaque_id = new_opaque_id("svi")
        attrs.setdefault("table_name", default_table_name(service_name, opaque_id))
        values = {
            "opaque_id": opaque_id,
            "organization_id": organization_id,
            "service_name": service_name,
            **attrs,
        }
        names = list(values)
        row = self._fetch_one(
            f"""
            INSERT INTO service_integrations ({", ".join(names)})
            VALUES ({", ".join(["%s"] * len(names))})
            RETURNING {_INTEGRATION_COLUMNS}
            """,
            [values[name] for name in names],
            "service integration insert",
        )
        return _integration_from_row(row)

    def get_integration(self, integration_id: int) -> ServiceIntegration:
        row = self._fetch_one(
            f"SELECT {_INTEGRATION_COLUMNS} FROM service_integrations WHERE id = %s",
            (integration_id,),
            "service integration lookup",
        )
        if row is None:
            raise NotFound(f"service integration {integration_id} not found")
        return _integration_from_row(row)

    def get_integration_by_opaque_id(self, opaque_id: str) -> ServiceIntegration:
        row = self._fetch_one(
            f"SELECT {_INTEGRATION_COLUMNS} FROM service_integrations WHERE opaque_id = %s",
            (opaque_id,),
            "service integration lookup",
        )
        if row is None:
            raise NotFound(f"service integration {opaque_id} not found")
        return _integration_from_row(row)

    def update_integration(self, integration: ServiceIntegration) -> ServiceIntegration:
        row = self._fetch_one(
            f"""
            UPDATE service_integrations
               SET table_name = %s,
                   api_url = %s,
                   backfill_key = %s,
                   backfill_secret = %s,
                   webhook_secret = %s,
                   depends_on_id = %s,
                   last_backfilled_at = %s,
                   skip_webhook_verification = %s,
                   updated_at = now()
             WHERE id = %s
         RETURNING {_INTEGRATION_COLUMNS}
            """,
            (
                integration.table_name,
                integration.api_url,
                integration.backfill_key,
                integration.backfill_secret,
                integration.webhook_secret,
                integration.depends_on_id,
                integration.last_backfilled_at,
                integration.skip_webhook_verification,
                integration.id,
            ),
            "service integration update",
        )
        if row is None:
            raise NotFound(f"service integration {integration.id} not found")
        return _integration_from_row(row)

    def find_integrations(
        self,
        organization_id: int,
        *,
        service_name: Optional[str] = None,
        depends_on_id: Optional[int] = None,
    ) -> List[ServiceIntegration]:
        rows = self._fetch_all(
            f"""
            SELECT {_INTEGRATION_COLUMNS}
              FROM service_integrations
             WHERE organization_id = %s
               AND (%s::text IS NULL OR service_name = %s)
               AND (%s::bigint IS NULL OR depends_on_id = %s)
             ORDER BY id
            """,
            (organization_id, service_name, service_name, depends_on_id, depends_on_id),
            "service integration search",
        )
        return [_integration_from_row(row) for row in rows]

    # ------------------------------------------------------------------ jobs
    def create_backfill_job(
        self,
        service_integration_id: int,
        *,
        incremental: bool,
        parent_job_id: Optional[int] = None,
    ) -> BackfillJob:
        row = self._fetch_one(
            f"""
            INSERT INTO backfill_jobs (
                opaque_id,
                service_integration_id,
                incremental,
                parent_job_id
            ) VALUES (%s, %s, %s, %s)
            RETURNING {_JOB_COLUMNS}
            """,
            (new_opaque_id("bfj"), service_integration_id, incremental, parent_job_id),
            "backfill job insert",
        )
        return _job_from_row(row)

    def get_backfill_job(self, job_id: int) -> BackfillJob:
        row = self._fetch_one(
            f"SELECT {_JOB_COLUMNS} FROM backfill_jobs WHERE id = %s",
            (job_id,),
            "backfill job lookup",
        )
        if row is None:
            raise NotFound(f"backfill job {job_id} not found")
        return _job_from_row(row)

    def get_backfill_job_by_opaque_id(self, opaque_id: str) -> BackfillJob:
        row = self._fetch_one(
            f"SELECT {_JOB_COLUMNS} FROM backfill_jobs WHERE opaque_id = %s",
            (opaque_id,),
            "backfill job lookup",
        )
        if row is None:
            raise NotFound(f"backfill job {opaque_id} not found")
        return _job_from_row(row)

    def update_backfill_job(self, job: BackfillJob) -> BackfillJob:
        row = self._fetch_one(
            f"""
            UPDATE backfill_jobs
               SET cursor = %s,
                   status = %s,
                   started_at = %s,
                   finished_at = %s,
                   error = %s,
                   updated_at = now()
             WHERE id = %s
         RETURNING {_JOB_COLUMNS}
            """,
            (job.cursor, job.status, job.started_at, job.finished_at, job.error, job.id),
            "backfill job update",
        )
        if row is None:
            raise NotFound(f"backfill job {job.id} not found")
        return _job_from_row(row)

    def child_jobs(self, job: BackfillJob) -> List[BackfillJob]:
        rows = self._fetch_all(
            f"SELECT {_JOB_COLUMNS} FROM backfill_jobs WHERE parent_job_id = %s ORDER BY id",
            (job.id,),
            "backfill job children",
        )
        return [_job_from_row(row) for row in rows]


__all__ = [
    "InMemoryIntegrationRepository",
    "IntegrationRepository",
    "PostgresIntegrationRepository",
]
