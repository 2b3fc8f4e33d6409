import pytest

from cdc_replicator.db.repository import PostgresIntegrationRepository
from cdc_replicator.errors import StoreError
from cdc_replicator.migrations.runner import apply_migrations, rollback_last

pytestmark = pytest.mark.integration


def _table_exists(conn, name):
    row = conn.execute("SELECT to_regclass(%s) AS regclass", (name,)).fetchone()
    return row["regclass"] is not None


def test_migrations_are_recorded_and_idempotent(db_conn):
    rows = db_conn.execute(
        "SELECT version FROM public.schema_migrations ORDER BY version"
    ).fetchall()

    assert [row["version"] for row in rows] == ["000", "001"]
    assert apply_migrations(conn=db_conn) == []


def test_rollback_and_reapply(db_conn):
    assert rollback_last(conn=db_conn).version == "001"
    assert not _table_exists(db_conn, "public.service_integrations")
    assert _table_exists(db_conn, "public.schema_migrations")

    assert rollback_last(conn=db_conn).version == "000"
    assert not _table_exists(db_conn, "public.schema_migrations")

    assert [m.version for m in apply_migrations(conn=db_conn)] == ["000", "001"]
    assert _table_exists(db_conn, "public.backfill_jobs")


def test_integration_cannot_depend_on_itself(db_conn):
    repo = PostgresIntegrationRepository(db_conn)
    org = repo.create_organization("acme", "Acme")
    sint = repo.create_integration(org.id, "fake_v1")

    with pytest.raises(StoreError):
        repo.update_integration(sint.with_changes(depends_on_id=sint.id))


def test_table_names_unique_per_organization(db_conn):
    repo = PostgresIntegrationRepository(db_conn)
    org = repo.create_organization("acme", "Acme")
    repo.create_integration(org.id, "fake_v1", table_name="orders")

    with pytest.raises(StoreError):
        repo.create_integration(org.id, "fake_v1", table_name="orders")


def test_backfill_job_status_is_constrained(db_conn):
    repo = PostgresIntegrationRepository(db_conn)
    org = repo.create_organization("acme", "Acme")
    job = repo.create_backfill_job(repo.create_integration(org.id, "fake_v1").id, incremental=False)

    with pytest.raises(StoreError):
        repo.update_backfill_job(job.with_changes(status="paused"))
