"""Row store implementations backing one replicated table per integration."""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
)

from ..errors import StoreError
from ..replicator.columns import (
    DATA_COLUMN,
    ENRICHMENT_COLUMN,
    OBJECT,
    PRIMARY_KEY_COLUMN,
    ROW_CREATED_AT_COLUMN,
    TableSchema,
)
from . import Connection, Error, Json, sql

logger = logging.getLogger(__name__)

UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_STALE = "stale"


@dataclass(frozen=True)
class RowWindow:
    """Delete predicate: extra equality conditions plus a timestamp range.

    The range is ``start < column <= end``; ``start_inclusive`` turns the lower
    bound into ``>=`` and ``start=None`` removes it. Condition values that are
    lists, tuples or sets match any of their members.
    """

    column: str
    end: datetime
    start: Optional[datetime] = None
    start_inclusive: bool = False
    conditions: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, row: Mapping[str, Any]) -> bool:
        for key, expected in self.conditions.items():
            actual = row.get(key)
            if isinstance(expected, (list, tuple, set, frozenset)):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        value = row.get(self.column)
        if value is None:
            return False
        if value > self.end:
            return False
        if self.start is not None:
            if self.start_inclusive:
                return value >= self.start
            return value > self.start
        return True


@dataclass(frozen=True)
class UpsertOutcome:
    status: str  # inserted | updated | stale
    row: Optional[Dict[str, Any]]
    previous: Optional[Dict[str, Any]] = None


class RowStore(Protocol):
    """Capabilities the engine needs from the operator-owned relational store."""

    def transaction(self) -> ContextManager[Any]: ...

    def table_exists(self, table_name: str) -> bool: ...

    def create_table(self, schema: TableSchema) -> None: ...

    def add_missing_columns(self, schema: TableSchema) -> List[str]: ...

    def drop_table(self, table_name: str) -> None: ...

    def upsert_row(
        self, schema: TableSchema, values: Mapping[str, Any]
    ) -> UpsertOutcome: ...

    def update_row(
        self, schema: TableSchema, external_id: Any, values: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    def fetch_row(
        self, schema: TableSchema, external_id: Any
    ) -> Optional[Dict[str, Any]]: ...

    def delete_where(self, table_name: str, window: RowWindow, limit: int) -> int: ...

    def min_value(self, table_name: str, column: str) -> Any: ...

    def set_autovacuum(self, table_name: str, enabled: bool) -> None: ...

    def session_option(self, name: str, value: str) -> ContextManager[None]: ...


def _is_newer(candidate: Any, stored: Any) -> bool:
    if candidate is None:
        return False
    if stored is None:
        return True
    return candidate > stored


# ---------------------------------------------------------------------------
# In-memory implementation


@dataclass
class _MemoryTable:
    schema: TableSchema
    rows: Dict[Any, Dict[str, Any]] = field(default_factory=dict)
    next_pk: int = 1


@dataclass(frozen=True)
class DeleteCall:
    table_name: str
    window: RowWindow
    limit: int
    deleted: int
    session_options: Mapping[str, str]


class InMemoryRowStore:
    """Volatile row store honouring the same conditional-write semantics."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._lock = RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tables: Dict[str, _MemoryTable] = {}
        self._autovacuum: Dict[str, bool] = {}
        self._session_options: Dict[str, str] = {}
        self._tx_depth = 0
        self._snapshot: Optional[Dict[str, _MemoryTable]] = None
        self.delete_calls: List[DeleteCall] = []
        self.autovacuum_changes: List[tuple[str, bool]] = []

    # ------------------------------------------------------------------ scopes
    @contextmanager
    def transaction(self) -> Iterator["InMemoryRowStore"]:
        with self._lock:
            outermost = self._tx_depth == 0
            if outermost:
                self._snapshot = copy.deepcopy(self._tables)
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if outermost and self._snapshot is not None:
                    self._tables = self._snapshot
                raise
            finally:
                self._tx_depth -= 1
                if outermost:
                    self._snapshot = None

    @contextmanager
    def session_option(self, name: str, value: str) -> Iterator[None]:
        with self.transaction():
            previous = self._session_options.get(name)
            self._session_options[name] = str(value)
            try:
                yield
            finally:
                if previous is None:
                    self._session_options.pop(name, None)
                else:
                    self._session_options[name] = previous

    @property
    def active_session_options(self) -> Dict[str, str]:
        return dict(self._session_options)

    # ------------------------------------------------------------------ schema
    def table_exists(self, table_name: str) -> bool:
        return table_name in self._tables

    def create_table(self, schema: TableSchema) -> None:
        with self._lock:
            if schema.table_name not in self._tables:
                self._tables[schema.table_name] = _MemoryTable(schema=schema)
                self._autovacuum[schema.table_name] = True

    def add_missing_columns(self, schema: TableSchema) -> List[str]:
        with self._lock:
            table = self._require(schema.table_name)
            known = {col.name for col in table.schema.all_columns()}
            added = [col.name for col in schema.columns if col.name not in known]
            for row in table.rows.values():
                for name in added:
                    row.setdefault(name, None)
            table.schema = schema
            return added

    def drop_table(self, table_name: str) -> None:
        with self._lock:
            self._tables.pop(table_name, None)
            self._autovacuum.pop(table_name, None)

    # ------------------------------------------------------------------ rows
    def upsert_row(self, schema: TableSchema, values: Mapping[str, Any]) -> UpsertOutcome:
        key_name = schema.key_column.name
        ts_name = schema.timestamp_column
        with self._lock:
            table = self._require(schema.table_name)
            external_id = values[key_name]
            existing = table.rows.get(external_id)
            if existing is None:
                row = {col.name: None for col in table.schema.all_columns()}
                row.update(copy.deepcopy(dict(values)))
                row[PRIMARY_KEY_COLUMN] = table.next_pk
                row[ROW_CREATED_AT_COLUMN] = self._clock()
                table.next_pk += 1
                table.rows[external_id] = row
                return UpsertOutcome(UPSERT_INSERTED, copy.deepcopy(row))
            previous = copy.deepcopy(existing)
            if not _is_newer(values.get(ts_name), existing.get(ts_name)):
                return UpsertOutcome(UPSERT_STALE, None, previous)
            existing.update(copy.deepcopy(dict(values)))
            return UpsertOutcome(UPSERT_UPDATED, copy.deepcopy(existing), previous)

    def update_row(
        self, schema: TableSchema, external_id: Any, values: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            table = self._require(schema.table_name)
            row = table.rows.get(external_id)
            if row is None:
                return None
            row.update(copy.deepcopy(dict(values)))
            return copy.deepcopy(row)

    def fetch_row(self, schema: TableSchema, external_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._require(schema.table_name).rows.get(external_id)
            return copy.deepcopy(row) if row is not None else None

    def rows(self, table_name: str) -> List[Dict[str, Any]]:
        with self._lock:
            table = self._require(table_name)
            ordered = sorted(table.rows.values(), key=lambda r: r[PRIMARY_KEY_COLUMN])
            return copy.deepcopy(ordered)

    def delete_where(self, table_name: str, window: RowWindow, limit: int) -> int:
        if limit <= 0:
            raise ValueError("limit must be positive")
        with self._lock:
            table = self._require(table_name)
            doomed = []
            for key, row in table.rows.items():
                if window.matches(row):
                    doomed.append(key)
                    if len(doomed) >= limit:
                        break
            for key in doomed:
                del table.rows[key]
            self.delete_calls.append(
                DeleteCall(
                    table_name=table_name,
                    window=window,
                    limit=limit,
                    deleted=len(doomed),
                    session_options=dict(self._session_options),
                )
            )
            return len(doomed)

    def min_value(self, table_name: str, column: str) -> Any:
        with self._lock:
            values = [
                row[column]
                for row in self._require(table_name).rows.values()
                if row.get(column) is not None
            ]
            return min(values) if values else None

    # ------------------------------------------------------------------ maintenance
    def set_autovacuum(self, table_name: str, enabled: bool) -> None:
        with self._lock:
            self._require(table_name)
            self._autovacuum[table_name] = enabled
            self.autovacuum_changes.append((table_name, enabled))

    def autovacuum_enabled(self, table_name: str) -> bool:
        return self._autovacuum.get(table_name, True)

    def _require(self, table_name: str) -> _MemoryTable:
        table = self._tables.get(table_name)
        if table is None:
            raise StoreError(f'relation "{table_name}" does not exist')
        return table


# ---------------------------------------------------------------------------
# PostgreSQL implementation


class PostgresRowStore:
    """Row store backed by a psycopg2 connection to the replication database."""

    def __init__(self, conn: Connection, *, schema: str = "public") -> None:
        self.conn = conn
        self.schema = schema

    def _table(self, table_name: str) -> sql.Composable:
        return sql.Identifier(self.schema, table_name)

    def transaction(self):
        return self.conn.transaction()

    @contextmanager
    def session_option(self, name: str, value: str) -> Iterator[None]:
        with self.conn.transaction():
            try:
                self.conn.execute(
                    sql.SQL("SET LOCAL {} = {}").format(
                        sql.Identifier(name), sql.Literal(str(value))
                    )
                )
            except Error as exc:  # noqa: BLE001 - wrap driver errors
                raise StoreError(f"setting {name} failed: {exc}") from exc
            yield

    # ------------------------------------------------------------------ schema
    def table_exists(self, table_name: str) -> bool:
        try:
            row = self.conn.execute(
                "SELECT to_regclass(%s) AS regclass",
                (f'"{self.schema}"."{table_name}"',),
            ).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"table lookup failed: {exc}") from exc
        return bool(row and row["regclass"])

    def create_table(self, schema: TableSchema) -> None:
        table = self._table(schema.table_name)
        definitions: List[sql.Composable] = [
            sql.SQL("{} bigserial PRIMARY KEY").format(
                sql.Identifier(PRIMARY_KEY_COLUMN)
            ),
            sql.SQL("{} {} UNIQUE NOT NULL").format(
                sql.Identifier(schema.key_column.name),
                sql.SQL(schema.key_column.type),
            ),
        ]
        for col in schema.columns:
            definitions.append(
                sql.SQL("{} {}").format(sql.Identifier(col.name), sql.SQL(col.type))
            )
        if schema.store_enrichment:
            definitions.append(
                sql.SQL("{} jsonb").format(sql.Identifier(ENRICHMENT_COLUMN))
            )
        definitions.append(
            sql.SQL("{} timestamptz NOT NULL DEFAULT now()").format(
                sql.Identifier(ROW_CREATED_AT_COLUMN)
            )
        )
        # data goes last since it is by far the widest column
        definitions.append(
            sql.SQL("{} jsonb NOT NULL").format(sql.Identifier(DATA_COLUMN))
        )
        statement = sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
            table, sql.SQL(", ").join(definitions)
        )
        try:
            with self.conn.transaction():
                self.conn.execute(statement)
                self._create_indexes(schema)
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"create table {schema.table_name} failed: {exc}") from exc
        logger.info("created table %s.%s", self.schema, schema.table_name)

    def add_missing_columns(self, schema: TableSchema) -> List[str]:
        try:
            with self.conn.transaction():
                existing = {
                    row["column_name"]
                    for row in self.conn.execute(
                        """
                        SELECT column_name
                          FROM information_schema.columns
                         WHERE table_schema = %s
                           AND table_name = %s
                        """,
                        (self.schema, schema.table_name),
                    ).fetchall()
                }
                added: List[str] = []
                for col in schema.columns:
                    if col.name in existing:
                        continue
                    self.conn.execute(
                        sql.SQL("ALTER TABLE {} ADD COLUMN {} {}").format(
                            self._table(schema.table_name),
                            sql.Identifier(col.name),
                            sql.SQL(col.type),
                        )
                    )
                    added.append(col.name)
                if schema.store_enrichment and ENRICHMENT_COLUMN not in existing:
                    self.conn.execute(
                        sql.SQL("ALTER TABLE {} ADD COLUMN {} jsonb").format(
                            self._table(schema.table_name),
                            sql.Identifier(ENRICHMENT_COLUMN),
                        )
                    )
                    added.append(ENRICHMENT_COLUMN)
                self._create_indexes(schema)
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"altering {schema.table_name} failed: {exc}") from exc
        return added

    def _create_indexes(self, schema: TableSchema) -> None:
        for col in schema.indexed_columns():
            self.conn.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} ({})").format(
                    sql.Identifier(schema.index_name(col)),
                    self._table(schema.table_name),
                    sql.Identifier(col.name),
                )
            )

    def drop_table(self, table_name: str) -> None:
        try:
            self.conn.execute(
                sql.SQL("DROP TABLE IF EXISTS {}").format(self._table(table_name))
            )
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"drop table {table_name} failed: {exc}") from exc

    # ------------------------------------------------------------------ rows
    def upsert_row(self, schema: TableSchema, values: Mapping[str, Any]) -> UpsertOutcome:
        table = self._table(schema.table_name)
        key = schema.key_column.name
        names = list(values.keys())
        params = [self._adapt(schema, name, values[name]) for name in names]
        updates = [name for name in names if name != key]
        statement = sql.SQL(
            "INSERT INTO {table} AS t ({cols}) VALUES ({placeholders}) "
            "ON CONFLICT ({key}) DO UPDATE SET {assignments} "
            "WHERE t.{ts} IS NULL OR t.{ts} < EXCLUDED.{ts} "
            "RETURNING t.*, (xmax = 0) AS _inserted"
        ).format(
            table=table,
            cols=sql.SQL(", ").join(sql.Identifier(n) for n in names),
            placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in names),
            key=sql.Identifier(key),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(
                    sql.Identifier(n), sql.Identifier(n)
                )
                for n in updates
            ),
            ts=sql.Identifier(schema.timestamp_column),
        )
        try:
            with self.conn.transaction():
                # serializes first inserts of one key so FOR UPDATE sees the winner
                self.conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                    (f"{schema.table_name}:{values[key]}",),
                )
                previous = self.conn.execute(
                    sql.SQL("SELECT * FROM {} WHERE {} = %s FOR UPDATE").format(
                        table, sql.Identifier(key)
                    ),
                    (values[key],),
                ).fetchone()
                row = self.conn.execute(statement, params).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"upsert into {schema.table_name} failed: {exc}") from exc
        if row is None:
            return UpsertOutcome(UPSERT_STALE, None, dict(previous) if previous else None)
        row = dict(row)
        inserted = row.pop("_inserted", False)
        if inserted:
            return UpsertOutcome(UPSERT_INSERTED, row)
        return UpsertOutcome(UPSERT_UPDATED, row, dict(previous) if previous else None)

    def update_row(
        self, schema: TableSchema, external_id: Any, values: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not values:
            return self.fetch_row(schema, external_id)
        names = list(values.keys())
        statement = sql.SQL("UPDATE {} SET {} WHERE {} = %s RETURNING *").format(
            self._table(schema.table_name),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(n)) for n in names
            ),
            sql.Identifier(schema.key_column.name),
        )
        params = [self._adapt(schema, n, values[n]) for n in names] + [external_id]
        try:
            row = self.conn.execute(statement, params).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"update of {schema.table_name} failed: {exc}") from exc
        return dict(row) if row else None

    def fetch_row(self, schema: TableSchema, external_id: Any) -> Optional[Dict[str, Any]]:
        try:
            row = self.conn.execute(
                sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
                    self._table(schema.table_name),
                    sql.Identifier(schema.key_column.name),
                ),
                (external_id,),
            ).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"read from {schema.table_name} failed: {exc}") from exc
        return dict(row) if row else None

    def delete_where(self, table_name: str, window: RowWindow, limit: int) -> int:
        if limit <= 0:
            raise ValueError("limit must be positive")
        table = self._table(table_name)
        clauses: List[sql.Composable] = []
        params: List[Any] = []
        for name, expected in window.conditions.items():
            if isinstance(expected, (list, tuple, set, frozenset)):
                clauses.append(sql.SQL("{} = ANY(%s)").format(sql.Identifier(name)))
                params.append(list(expected))
            else:
                clauses.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
                params.append(expected)
        column = sql.Identifier(window.column)
        if window.start is not None:
            op = ">=" if window.start_inclusive else ">"
            clauses.append(sql.SQL("{} " + op + " %s").format(column))
            params.append(window.start)
        clauses.append(sql.SQL("{} <= %s").format(column))
        params.append(window.end)
        params.append(limit)
        statement = sql.SQL(
            "DELETE FROM {table} WHERE {pk} IN "
            "(SELECT {pk} FROM {table} WHERE {where} LIMIT %s)"
        ).format(
            table=table,
            pk=sql.Identifier(PRIMARY_KEY_COLUMN),
            where=sql.SQL(" AND ").join(clauses),
        )
        try:
            return self.conn.execute(statement, params).rowcount
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"delete from {table_name} failed: {exc}") from exc

    def min_value(self, table_name: str, column: str) -> Any:
        try:
            row = self.conn.execute(
                sql.SQL("SELECT min({}) AS value FROM {}").format(
                    sql.Identifier(column), self._table(table_name)
                )
            ).fetchone()
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"min({column}) on {table_name} failed: {exc}") from exc
        return row["value"] if row else None

    # ------------------------------------------------------------------ maintenance
    def set_autovacuum(self, table_name: str, enabled: bool) -> None:
        statement = sql.SQL("ALTER TABLE {} SET (autovacuum_enabled = {})").format(
            self._table(table_name), sql.SQL("on" if enabled else "off")
        )
        try:
            self.conn.execute(statement)
        except Error as exc:  # noqa: BLE001
            raise StoreError(f"autovacuum toggle on {table_name} failed: {exc}") from exc

    @staticmethod
    def _adapt(schema: TableSchema, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in (DATA_COLUMN, ENRICHMENT_COLUMN):
            return Json(value)
        try:
            col = schema.column(name)
        except KeyError:
            return value
        if col.type == OBJECT:
            return Json(value)
        return value


__all__ = [
    "DeleteCall",
    "InMemoryRowStore",
    "PostgresRowStore",
    "RowStore",
    "RowWindow",
    "UPSERT_INSERTED",
    "UPSERT_STALE",
    "UPSERT_UPDATED",
    "UpsertOutcome",
]
