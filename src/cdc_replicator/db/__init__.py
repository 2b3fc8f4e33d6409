"""Database utilities and psycopg2 helpers for replicated-table persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterator, Optional, Sequence

import psycopg2
from psycopg2 import Error, OperationalError, errors, sql
from psycopg2.extras import Json, RealDictCursor

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from cdc_replicator.config import Settings


class _ExecuteResult:
    def __init__(self, cursor):
        self.rowcount = cursor.rowcount
        if cursor.description is not None:
            self._rows = list(cursor.fetchall())
        else:
            self._rows = []
        self._index = 0
        cursor.close()

    def fetchone(self):
        if self._index >= len(self._rows):
            return None
        row = self._rows[self._index]
        self._index += 1
        return row

    def fetchall(self):
        remaining = self._rows[self._index :]
        self._index = len(self._rows)
        return remaining

    def __iter__(self) -> Iterator:
        start = self._index
        self._index = len(self._rows)
        return iter(self._rows[start:])


class _Transaction:
    """Re-entrant transaction scope; only the outermost scope commits."""

    def __init__(self, connection: "Connection"):
        self._connection = connection

    def __enter__(self) -> "Connection":
        self._connection._tx_depth += 1
        return self._connection

    def __exit__(self, exc_type, exc, tb) -> bool:
        conn = self._connection
        conn._tx_depth -= 1
        if conn._tx_depth > 0:
            return False
        if exc_type is None:
            conn.commit()
        else:
            try:
                conn.rollback()
            except psycopg2.InterfaceError:
                pass
        return False


class Connection(psycopg2.extensions.connection):
    """psycopg2 connection subclass providing the helpers used by the stores.

    Statements issued outside :meth:`transaction` are committed immediately.
    Rows are returned as dictionaries.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._tx_depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def transaction(self) -> _Transaction:
        return _Transaction(self)

    def execute(
        self, query: Any, params: Optional[Sequence[Any]] = None
    ) -> _ExecuteResult:
        cursor = self.cursor(cursor_factory=RealDictCursor)
        try:
            cursor.execute(query, params)
            result = _ExecuteResult(cursor)
        except Exception:
            if not self.in_transaction:
                self.rollback()
            raise
        if not self.in_transaction:
            self.commit()
        return result


def connect(*args, **kwargs) -> Connection:
    """Create a Connection instance using psycopg2."""

    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a psycopg2 connection using the provided engine settings."""

    return connect(
        host=settings.db_host,
        port=settings.db_port,
        dbname=settings.db_name,
        user=settings.db_user,
        password=settings.db_password,
        options=f"-c search_path={settings.db_schema},public",
    )


__all__ = [
    "Connection",
    "Error",
    "Json",
    "OperationalError",
    "connect",
    "connect_from_settings",
    "errors",
    "sql",
]
