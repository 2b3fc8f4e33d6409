"""psycopg2-based migration runner for the control-plane schema."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from importlib.resources import files
from typing import Dict, List, Optional, Tuple

from cdc_replicator.config import load_settings
from cdc_replicator.db import Connection, connect, connect_from_settings

MIGRATION_PACKAGE = "cdc_replicator.migrations.sql"
SCHEMA_MIGRATIONS_TABLE = "public.schema_migrations"


class MigrationError(Exception):
    """Base exception raised for migration related failures."""


class MigrationChecksumMismatch(MigrationError):
    """Raised when the on-disk migration checksum differs from the recorded one."""


class MigrationNotFound(MigrationError):
    """Raised when a down migration is missing for the requested version."""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    up_sql: str
    down_sql: str
    checksum: str

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"


def load_migrations() -> List[Migration]:
    """Load the packaged ``NNN_name.up.sql``/``.down.sql`` pairs sorted by version."""

    base = files(MIGRATION_PACKAGE)
    migrations: List[Migration] = []
    for entry in base.iterdir():
        if not entry.name.endswith(".up.sql"):
            continue
        stem = entry.name[: -len(".up.sql")]
        down_entry = base / f"{stem}.down.sql"
        if not down_entry.is_file():
            raise MigrationNotFound(f"Missing down script for migration '{stem}'")

        version, _, title = stem.partition("_")
        if not version.isdigit():
            raise MigrationError(
                f"Migration '{stem}' does not start with a numeric version prefix"
            )

        up_sql = entry.read_text(encoding="utf-8")
        migrations.append(
            Migration(
                version=version,
                name=title,
                up_sql=up_sql,
                down_sql=down_entry.read_text(encoding="utf-8"),
                checksum=hashlib.sha256(up_sql.encode("utf-8")).hexdigest(),
            )
        )

    migrations.sort(key=lambda m: int(m.version))
    return migrations


def _get_connection(
    conn: Optional[Connection], conninfo: Optional[str]
) -> Tuple[Connection, bool]:
    if conn is not None:
        return conn, False
    if conninfo:
        return connect(conninfo), True
    return connect_from_settings(load_settings()), True


def _schema_migrations_exists(conn: Connection) -> bool:
    row = conn.execute(
        "SELECT to_regclass(%s) AS regclass", (SCHEMA_MIGRATIONS_TABLE,)
    ).fetchone()
    return bool(row and row["regclass"])


def _fetch_applied(conn: Connection) -> Dict[str, str]:
    """Map of applied version to checksum; empty when the ledger is missing."""

    if not _schema_migrations_exists(conn):
        return {}
    rows = conn.execute(
        f"SELECT version, checksum FROM {SCHEMA_MIGRATIONS_TABLE} ORDER BY version"
    ).fetchall()
    return {row["version"]: row["checksum"] for row in rows}


def apply_migrations(
    *,
    conn: Optional[Connection] = None,
    conninfo: Optional[str] = None,
    target_version: Optional[str] = None,
    dry_run: bool = False,
) -> List[Migration]:
    """Apply outstanding migrations up to the optional target version.

    Returns the migrations that were executed (or would be, in dry-run).
    """

    migrations = load_migrations()
    connection, should_close = _get_connection(conn, conninfo)
    executed: List[Migration] = []

    try:
        applied = _fetch_applied(connection)
        for migration in migrations:
            if target_version and int(migration.version) > int(target_version):
                break

            recorded = applied.get(migration.version)
            if recorded is not None:
                if recorded != migration.checksum:
                    raise MigrationChecksumMismatch(
                        f"Checksum mismatch for migration {migration.label}"
                    )
                continue

            executed.append(migration)
            if dry_run:
                continue

            with connection.transaction():
                connection.execute(migration.up_sql)
                connection.execute(
                    f"INSERT INTO {SCHEMA_MIGRATIONS_TABLE} (version, checksum) VALUES (%s, %s)",
                    (migration.version, migration.checksum),
                )
    finally:
        if should_close:
            connection.close()

    return executed


def rollback_last(
    *,
    conn: Optional[Connection] = None,
    conninfo: Optional[str] = None,
    dry_run: bool = False,
) -> Optional[Migration]:
    """Roll back the most recently applied migration using its down script."""

    migrations = {migration.version: migration for migration in load_migrations()}
    connection, should_close = _get_connection(conn, conninfo)

    try:
        if not _schema_migrations_exists(connection):
            return None

        row = connection.execute(
            f"SELECT version, checksum FROM {SCHEMA_MIGRATIONS_TABLE} "
            "ORDER BY (version)::int DESC LIMIT 1"
        ).fetchone()
        if not row:
            return None

        version = row["version"]
        migration = migrations.get(version)
        if migration is None:
            raise MigrationNotFound(f"No migration files found for version {version}")
        if migration.checksum != row["checksum"]:
            raise MigrationChecksumMismatch(
                f"Checksum mismatch for migration {migration.label} during rollback"
            )

        if dry_run:
            return migration

        # ledger row goes first: the 000 down script drops the ledger itself
        with connection.transaction():
            connection.execute(
                f"DELETE FROM {SCHEMA_MIGRATIONS_TABLE} WHERE version = %s",
                (version,),
            )
            connection.execute(migration.down_sql)
        return migration
    finally:
        if should_close:
            connection.close()


__all__ = [
    "Migration",
    "MigrationChecksumMismatch",
    "MigrationError",
    "MigrationNotFound",
    "SCHEMA_MIGRATIONS_TABLE",
    "apply_migrations",
    "load_migrations",
    "rollback_last",
]
