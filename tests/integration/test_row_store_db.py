import threading
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cdc_replicator.config import Settings
from cdc_replicator.db.repository import PostgresIntegrationRepository
from cdc_replicator.db import connect
from cdc_replicator.db.row_store import PostgresRowStore
from cdc_replicator.errors import UpstreamFetchError
from cdc_replicator.replicator import load_replicators
from cdc_replicator.replicator.fake import FakeWithEnrichmentsReplicator
from cdc_replicator.service import ReplicationService
from cdc_replicator.source_api import SourceApiClient
from cdc_replicator.stale_rows import StaleRowDeleter
from cdc_replicator.upsert import DIFF_INSERTED, DIFF_UPDATED, UpsertEngine

pytestmark = pytest.mark.integration

NOW = datetime(2020, 10, 30, 12, 0, tzinfo=timezone.utc)


def _enrichment_api(request: httpx.Request) -> httpx.Response:
    if request.url.path.startswith("/enrichment/broken"):
        return httpx.Response(502)
    return httpx.Response(200, json={"extra": "enriched"})


@pytest.fixture()
def service(temp_db, db_conn):
    settings = Settings(
        db_mode="local",
        db_host=temp_db["host"],
        db_port=temp_db["port"],
        db_name=temp_db["dbname"],
        db_user=temp_db["user"],
        db_password=temp_db["password"],
        db_schema="public",
        replication_schema="public",
        api_base_url="https://api.test",
    )
    source_api = SourceApiClient(
        http_client=httpx.Client(transport=httpx.MockTransport(_enrichment_api))
    )
    svc = ReplicationService(
        settings,
        PostgresIntegrationRepository(db_conn),
        PostgresRowStore(db_conn),
        registry=load_replicators(),
        source_api=source_api,
    )
    yield svc
    svc.close()


@pytest.fixture()
def organization(service):
    return service.integrations.create_organization("acme", "Acme")


def _replicator(service, organization, name):
    sint = service.integrations.create_integration(organization.id, name)
    replicator = service.replicator_for(sint)
    replicator.create_table(service.store)
    return replicator


def test_conditional_upsert_keeps_newest_row(service, organization):
    replicator = _replicator(service, organization, "fake_v1")
    engine = UpsertEngine(replicator, service.store)

    first = engine.upsert({"my_id": "a", "at": "2020-10-01T00:00:00Z", "v": 1})
    second = engine.upsert({"my_id": "a", "at": "2020-10-03T00:00:00Z", "v": 3})
    stale = engine.upsert({"my_id": "a", "at": "2020-10-02T00:00:00Z", "v": 2})

    assert first.status == DIFF_INSERTED
    assert second.status == DIFF_UPDATED
    assert stale.stale
    row = service.store.fetch_row(replicator.table_schema(), "a")
    assert row["data"]["v"] == 3
    assert row["pk"] == first.row["pk"]
    assert row["at"] == datetime(2020, 10, 3, tzinfo=timezone.utc)


def test_concurrent_first_inserts_report_the_committed_row(
    service, organization, db_conn, temp_db
):
    replicator = _replicator(service, organization, "fake_v1")
    other_conn = connect(**temp_db)
    try:
        first_engine = UpsertEngine(replicator, PostgresRowStore(db_conn))
        second_engine = UpsertEngine(replicator, PostgresRowStore(other_conn))
        results = {}

        def second_writer():
            results["second"] = second_engine.upsert(
                {"my_id": "a", "at": "2020-10-02T00:00:00Z", "v": 2}
            )

        with db_conn.transaction():
            first = first_engine.upsert({"my_id": "a", "at": "2020-10-01T00:00:00Z", "v": 1})
            writer = threading.Thread(target=second_writer)
            writer.start()
            time.sleep(0.3)
            assert "second" not in results
        writer.join(timeout=10)
    finally:
        other_conn.close()

    second = results["second"]
    assert first.status == DIFF_INSERTED
    assert second.status == DIFF_UPDATED
    assert "my_id" not in second.changed_fields
    assert "at" in second.changed_fields


def test_enrichment_written_in_same_transaction(service, organization, monkeypatch):
    replicator = _replicator(service, organization, "fake_with_enrichments_v1")
    engine = UpsertEngine(replicator, service.store)

    diff = engine.upsert({"my_id": "ok", "at": "2020-10-01T00:00:00Z"})
    assert diff.row["extra"] == "enriched"
    assert diff.row["enrichment"] == {"extra": "enriched"}

    monkeypatch.setattr(FakeWithEnrichmentsReplicator, "enrichment_required", True)
    with pytest.raises(UpstreamFetchError):
        engine.upsert({"my_id": "broken", "at": "2020-10-01T00:00:00Z"})
    assert service.store.fetch_row(replicator.table_schema(), "broken") is None


def test_ensure_all_columns_is_noop_on_current_table(service, organization):
    replicator = _replicator(service, organization, "fake_with_enrichments_v1")

    assert replicator.ensure_all_columns(service.store) == []


def test_stale_rows_deleted_in_chunks_and_autovacuum_restored(service, organization, db_conn):
    replicator = _replicator(service, organization, "fake_stale_row_v1")
    engine = UpsertEngine(replicator, service.store)
    expired_at = (NOW - timedelta(days=7)).isoformat()
    for i in range(25):
        engine.upsert({"my_id": f"x{i}", "at": expired_at, "status": "cancelled"})
    engine.upsert({"my_id": "active", "at": expired_at, "status": "active"})

    summary = StaleRowDeleter.for_replicator(
        replicator,
        service.store,
        chunk_size=10,
        increment=timedelta(days=5),
        now=lambda: NOW,
    ).run()

    assert summary.deleted == 25
    assert summary.statements == 3
    table = replicator.service_integration.table_name
    remaining = db_conn.execute(f'SELECT my_id FROM public."{table}"').fetchall()
    assert [row["my_id"] for row in remaining] == ["active"]
    options = db_conn.execute(
        "SELECT reloptions FROM pg_class WHERE oid = to_regclass(%s)", (f'public."{table}"',)
    ).fetchone()["reloptions"]
    assert any(opt in ("autovacuum_enabled=on", "autovacuum_enabled=true") for opt in options)


def test_run_initial_uses_earliest_row(service, organization):
    replicator = _replicator(service, organization, "fake_stale_row_v1")
    engine = UpsertEngine(replicator, service.store)
    engine.upsert({"my_id": "ancient", "at": (NOW - timedelta(days=90)).isoformat(), "status": "cancelled"})
    engine.upsert({"my_id": "fresh", "at": (NOW - timedelta(days=1)).isoformat(), "status": "cancelled"})

    summary = StaleRowDeleter.for_replicator(
        replicator, service.store, increment=timedelta(days=30), now=lambda: NOW
    ).run_initial()

    assert summary.deleted == 1
    assert service.store.fetch_row(replicator.table_schema(), "fresh") is not None
