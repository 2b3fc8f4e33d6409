from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

import pytest

from cdc_replicator.db import Json, OperationalError
from cdc_replicator.db.row_store import (
    UPSERT_INSERTED,
    UPSERT_STALE,
    UPSERT_UPDATED,
    PostgresRowStore,
    RowWindow,
)
from cdc_replicator.errors import StoreError
from cdc_replicator.replicator.columns import TEXT, TIMESTAMP, Column, TableSchema

pytestmark = pytest.mark.unit

T1 = datetime(2020, 10, 1, tzinfo=timezone.utc)
T2 = datetime(2020, 10, 2, tzinfo=timezone.utc)

SCHEMA = TableSchema(
    table_name="fake_v1_abc",
    key_column=Column("my_id", TEXT),
    timestamp_column="at",
    columns=(Column("at", TIMESTAMP, index=True),),
    index_prefix="svi_abc",
)


class _FakeCursor:
    def __init__(self, rows: List[dict[str, Any]], rowcount: int = -1):
        self._rows = rows
        self.rowcount = rowcount if rowcount >= 0 else len(rows)

    def fetchone(self) -> Optional[dict[str, Any]]:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> List[dict[str, Any]]:
        return list(self._rows)


class _FakeTransaction:
    def __init__(self, connection: "_FakeConnection"):
        self._connection = connection

    def __enter__(self) -> "_FakeConnection":
        self._connection.depth += 1
        return self._connection

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._connection.depth -= 1
        return False


class _FakeConnection:
    """Returns scripted responses; records params and transaction depth per call."""

    def __init__(self, responses: Iterator[Any]):
        self._responses = responses
        self.executed = []
        self.depth = 0

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    def execute(self, query: Any, params: Any = None) -> _FakeCursor:
        self.executed.append((query, params, self.depth))
        response = next(self._responses)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return _FakeCursor([], rowcount=response)
        return _FakeCursor(response)


def _row(**overrides):
    row = {"pk": 1, "my_id": "a", "at": T1, "data": {"v": 1}}
    row.update(overrides)
    return row


def test_upsert_reports_insert_and_hides_marker():
    conn = _FakeConnection(iter([[], [], [{**_row(), "_inserted": True}]]))
    store = PostgresRowStore(conn, schema="replication")

    outcome = store.upsert_row(SCHEMA, {"my_id": "a", "at": T1, "data": {"v": 1}})

    assert outcome.status == UPSERT_INSERTED
    assert outcome.row == _row()
    assert outcome.previous is None
    (_, advisory_params, _), (_, select_params, select_depth), (_, params, depth) = conn.executed
    assert advisory_params == ("fake_v1_abc:a",)
    assert select_params == ("a",)
    assert select_depth == depth == 1
    assert params[:2] == ["a", T1]
    assert isinstance(params[2], Json)


def test_upsert_reports_update_with_previous_row():
    previous = _row()
    conn = _FakeConnection(iter([[], [previous], [{**_row(at=T2, data={"v": 2}), "_inserted": False}]]))

    outcome = PostgresRowStore(conn).upsert_row(SCHEMA, {"my_id": "a", "at": T2, "data": {"v": 2}})

    assert outcome.status == UPSERT_UPDATED
    assert outcome.previous == previous
    assert outcome.row["at"] == T2


def test_upsert_with_no_returned_row_is_stale():
    conn = _FakeConnection(iter([[], [_row(at=T2)], []]))

    outcome = PostgresRowStore(conn).upsert_row(SCHEMA, {"my_id": "a", "at": T1, "data": {}})

    assert outcome.status == UPSERT_STALE
    assert outcome.row is None
    assert outcome.previous["at"] == T2


def test_upsert_wraps_driver_errors():
    conn = _FakeConnection(iter([OperationalError("server closed the connection")]))

    with pytest.raises(StoreError, match="upsert into fake_v1_abc failed"):
        PostgresRowStore(conn).upsert_row(SCHEMA, {"my_id": "a", "at": T1, "data": {}})


def test_delete_where_binds_conditions_range_and_limit():
    conn = _FakeConnection(iter([7]))
    window = RowWindow(
        column="at",
        start=T1,
        end=T2,
        conditions={"status": "cancelled", "kind": ("a", "b")},
    )

    deleted = PostgresRowStore(conn).delete_where("fake_v1_abc", window, 100)

    assert deleted == 7
    (_, params, _), = conn.executed
    assert params == ["cancelled", ["a", "b"], T1, T2, 100]


def test_delete_where_without_lower_bound():
    conn = _FakeConnection(iter([0]))

    PostgresRowStore(conn).delete_where("t", RowWindow(column="at", end=T2), 10)

    assert conn.executed[0][1] == [T2, 10]


def test_delete_where_requires_positive_limit():
    with pytest.raises(ValueError):
        PostgresRowStore(_FakeConnection(iter([]))).delete_where(
            "t", RowWindow(column="at", end=T2), 0
        )


def test_min_value_and_table_exists():
    conn = _FakeConnection(iter([[{"value": T1}], [{"regclass": "replication.t"}], [{"regclass": None}]]))
    store = PostgresRowStore(conn, schema="replication")

    assert store.min_value("t", "at") == T1
    assert store.table_exists("t")
    assert not store.table_exists("missing")
    assert conn.executed[1][1] == ('"replication"."t"',)


def test_session_option_is_transaction_scoped():
    conn = _FakeConnection(iter([[], 0]))
    store = PostgresRowStore(conn)

    with store.session_option("enable_seqscan", "off"):
        store.delete_where("t", RowWindow(column="at", end=T2), 10)

    assert [depth for _, _, depth in conn.executed] == [1, 1]
    assert conn.depth == 0


def test_create_table_builds_indexes_in_one_transaction():
    conn = _FakeConnection(iter([[], []]))

    PostgresRowStore(conn).create_table(SCHEMA)

    assert len(conn.executed) == 2
    assert all(depth == 1 for _, _, depth in conn.executed)


def test_autovacuum_toggle_wraps_errors():
    conn = _FakeConnection(iter([OperationalError("lock timeout")]))

    with pytest.raises(StoreError, match="autovacuum"):
        PostgresRowStore(conn).set_autovacuum("t", False)
