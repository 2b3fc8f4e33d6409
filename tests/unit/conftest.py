from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from cdc_replicator.config import Settings
from cdc_replicator.db.repository import InMemoryIntegrationRepository
from cdc_replicator.db.row_store import InMemoryRowStore
from cdc_replicator.replicator import ReplicatorContext, load_replicators
from cdc_replicator.source_api import SourceApiClient


@pytest.fixture()
def make_settings():
    def _make(**overrides) -> Settings:
        values = dict(
            db_mode="mock",
            db_host="localhost",
            db_port=5432,
            db_name="cdc_replicator",
            db_user="postgres",
            db_password="",
            db_schema="public",
            replication_schema="public",
            api_base_url="https://api.test",
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture()
def mock_source_api():
    def _make(handler) -> SourceApiClient:
        transport = httpx.MockTransport(handler)
        return SourceApiClient(http_client=httpx.Client(transport=transport))

    return _make


@pytest.fixture()
def registry():
    return load_replicators()


@pytest.fixture()
def integrations() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture()
def row_store() -> InMemoryRowStore:
    return InMemoryRowStore(clock=lambda: datetime(2020, 10, 30, tzinfo=timezone.utc))


@pytest.fixture()
def organization(integrations):
    return integrations.create_organization("acme", "Acme Corp")


@pytest.fixture()
def make_context(integrations, registry, mock_source_api):
    def _make(handler=None) -> ReplicatorContext:
        return ReplicatorContext(
            integrations=integrations,
            registry=registry,
            source_api=mock_source_api(handler) if handler is not None else None,
            api_base_url="https://api.test",
        )

    return _make
