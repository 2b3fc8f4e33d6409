import pytest

from cdc_replicator.migrations import __main__ as migrate_cli
from cdc_replicator.migrations.runner import (
    SCHEMA_MIGRATIONS_TABLE,
    MigrationChecksumMismatch,
    apply_migrations,
    load_migrations,
    rollback_last,
)


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeTransaction:
    def __init__(self, connection):
        self._connection = connection

    def __enter__(self):
        self._connection.transactions += 1
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    """Dict-row connection that tracks the migration ledger in memory."""

    def __init__(self):
        self.has_ledger = False
        self.executed_sql = []
        self.applied = []  # list of (version, checksum)
        self.transactions = 0
        self.closed = False

    def execute(self, sql, params=None):
        self.executed_sql.append((sql, params))
        normalized = " ".join(sql.split())
        if normalized.startswith("SELECT to_regclass"):
            value = SCHEMA_MIGRATIONS_TABLE if self.has_ledger else None
            return FakeCursor([{"regclass": value}])
        if normalized.startswith(
            f"SELECT version, checksum FROM {SCHEMA_MIGRATIONS_TABLE} ORDER BY (version)::int DESC"
        ):
            if not self.applied:
                return FakeCursor([])
            version, checksum = self.applied[-1]
            return FakeCursor([{"version": version, "checksum": checksum}])
        if normalized.startswith(
            f"SELECT version, checksum FROM {SCHEMA_MIGRATIONS_TABLE} ORDER BY version"
        ):
            return FakeCursor(
                [{"version": version, "checksum": checksum} for version, checksum in self.applied]
            )
        if normalized.startswith(f"INSERT INTO {SCHEMA_MIGRATIONS_TABLE}"):
            version, checksum = params
            self.applied.append((version, checksum))
            return FakeCursor([])
        if normalized.startswith(f"DELETE FROM {SCHEMA_MIGRATIONS_TABLE}"):
            version = params[0]
            self.applied = [row for row in self.applied if row[0] != version]
            return FakeCursor([])
        if "CREATE TABLE IF NOT EXISTS public.schema_migrations" in normalized:
            self.has_ledger = True
        if "DROP TABLE IF EXISTS public.schema_migrations" in normalized:
            self.has_ledger = False
        return FakeCursor([])

    def transaction(self):
        return FakeTransaction(self)

    def close(self):
        self.closed = True


@pytest.mark.unit
def test_load_migrations_orders_versions():
    migrations = load_migrations()
    assert [migration.version for migration in migrations] == ["000", "001"]
    assert [migration.label for migration in migrations] == [
        "000_schema_migrations",
        "001_control_plane",
    ]
    assert all(len(migration.checksum) == 64 for migration in migrations)


@pytest.mark.unit
def test_control_plane_migration_creates_tables():
    control_plane = load_migrations()[1]
    for table in ("organizations", "service_integrations", "backfill_jobs"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in control_plane.up_sql
        assert f"DROP TABLE IF EXISTS {table}" in control_plane.down_sql


@pytest.mark.unit
def test_apply_migrations_creates_records_in_order():
    connection = FakeConnection()

    executed = apply_migrations(conn=connection)

    assert [migration.version for migration in executed] == ["000", "001"]
    assert connection.applied == [
        (migration.version, migration.checksum) for migration in executed
    ]
    assert connection.transactions == 2
    assert not connection.closed

    assert apply_migrations(conn=connection) == []


@pytest.mark.unit
def test_apply_migrations_stops_at_target_version():
    connection = FakeConnection()

    executed = apply_migrations(conn=connection, target_version="000")

    assert [migration.version for migration in executed] == ["000"]
    assert [row[0] for row in connection.applied] == ["000"]


@pytest.mark.unit
def test_apply_migrations_detects_edited_scripts():
    connection = FakeConnection()
    apply_migrations(conn=connection)
    connection.applied[1] = ("001", "0" * 64)

    with pytest.raises(MigrationChecksumMismatch):
        apply_migrations(conn=connection)


@pytest.mark.unit
def test_rollback_last_removes_latest_entry():
    connection = FakeConnection()
    apply_migrations(conn=connection)

    rolled_back = rollback_last(conn=connection)

    assert rolled_back is not None
    assert rolled_back.version == "001"
    assert [row[0] for row in connection.applied] == ["000"]


@pytest.mark.unit
def test_rollback_of_ledger_migration_drops_ledger():
    connection = FakeConnection()
    apply_migrations(conn=connection)
    rollback_last(conn=connection)

    assert rollback_last(conn=connection).version == "000"
    assert not connection.has_ledger
    assert rollback_last(conn=connection) is None


@pytest.mark.unit
def test_apply_migrations_dry_run_only_reports():
    connection = FakeConnection()

    executed = apply_migrations(conn=connection, dry_run=True)
    assert [migration.version for migration in executed] == ["000", "001"]
    assert connection.applied == []


@pytest.mark.unit
def test_rollback_dry_run_keeps_ledger():
    connection = FakeConnection()
    apply_migrations(conn=connection)

    assert rollback_last(conn=connection, dry_run=True).version == "001"
    assert len(connection.applied) == 2


@pytest.mark.unit
def test_cli_apply_dry_run(monkeypatch, capsys):
    connection = FakeConnection()
    monkeypatch.setattr(
        "cdc_replicator.migrations.runner.connect", lambda conninfo: connection
    )

    assert migrate_cli.main(["apply", "--conninfo", "dbname=x", "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "DRY-RUN would apply migration 000_schema_migrations" in out
    assert "DRY-RUN would apply migration 001_control_plane" in out
    assert connection.closed


@pytest.mark.unit
def test_cli_rollback_with_empty_ledger(monkeypatch, capsys):
    monkeypatch.setattr(
        "cdc_replicator.migrations.runner.connect", lambda conninfo: FakeConnection()
    )

    assert migrate_cli.main(["rollback", "--conninfo", "dbname=x"]) == 0
    assert "No migrations to rollback" in capsys.readouterr().out
