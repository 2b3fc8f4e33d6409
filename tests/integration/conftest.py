import os
import uuid

import pytest

from cdc_replicator.db import OperationalError, connect
from cdc_replicator.migrations.runner import apply_migrations


def _admin_params():
    return {
        "host": os.getenv("PGHOST", "localhost"),
        "port": int(os.getenv("PGPORT", "5432")),
        "user": os.getenv("PGUSER", "postgres"),
        "password": os.getenv("PGPASSWORD", "postgres"),
    }


def _drop_database(params, name):
    cleanup = connect(dbname="postgres", **params)
    cleanup.autocommit = True
    try:
        cleanup.execute(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = %s",
            (name,),
        )
        cleanup.execute(f"DROP DATABASE IF EXISTS {name}")
    finally:
        cleanup.close()


@pytest.fixture()
def temp_db():
    """Fresh database with the control-plane migrations applied."""
    if os.getenv("DB_MODE", "mock").lower() != "local":
        pytest.skip("DB_MODE=mock - skipping live Postgres test")

    params = _admin_params()
    temp_db_name = f"cdc_replicator_{uuid.uuid4().hex[:8]}"

    try:
        admin_conn = connect(dbname="postgres", **params)
    except OperationalError as exc:  # pragma: no cover - depends on env
        pytest.skip(f"Postgres unavailable: {exc}")
    admin_conn.autocommit = True
    try:
        admin_conn.execute(f"CREATE DATABASE {temp_db_name} OWNER {params['user']}")
    finally:
        admin_conn.close()

    try:
        conn = connect(dbname=temp_db_name, **params)
        try:
            apply_migrations(conn=conn)
        finally:
            conn.close()
        yield {**params, "dbname": temp_db_name}
    finally:
        _drop_database(params, temp_db_name)


@pytest.fixture()
def db_conn(temp_db):
    conn = connect(**temp_db)
    try:
        yield conn
    finally:
        conn.close()
