"""Column and table definitions for replicated tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple, Union

TEXT = "text"
INTEGER = "integer"
BIGINT = "bigint"
BOOLEAN = "boolean"
NUMERIC = "numeric"
TIMESTAMP = "timestamptz"
OBJECT = "jsonb"

PRIMARY_KEY_COLUMN = "pk"
DATA_COLUMN = "data"
ENRICHMENT_COLUMN = "enrichment"
ROW_CREATED_AT_COLUMN = "row_created_at"

Converter = Callable[[Any], Any]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 strings, epoch seconds or datetimes into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"cannot parse timestamp from {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class Column:
    """A column of a replicated table and how to derive it from a payload.

    ``data_key`` is a key (or path of keys) into the resource; it defaults to
    the column name. Columns with ``from_enrichment`` are filled from the
    enrichment body rather than the resource.
    """

    name: str
    type: str
    index: bool = False
    data_key: Union[str, Tuple[str, ...], None] = None
    converter: Optional[Converter] = None
    optional: bool = True
    from_enrichment: bool = False
    defaulter: Optional[Callable[[], Any]] = None

    def key_path(self) -> Tuple[str, ...]:
        if self.data_key is None:
            return (self.name,)
        if isinstance(self.data_key, str):
            return (self.data_key,)
        return tuple(self.data_key)

    def extract(self, source: Optional[Mapping[str, Any]]) -> Any:
        """Pull and convert this column's value from ``source``."""
        value: Any = source
        for key in self.key_path():
            if not isinstance(value, Mapping) or key not in value:
                value = None
                break
            value = value[key]
        if value is None:
            if self.defaulter is not None:
                return self.defaulter()
            if not self.optional:
                path = ".".join(self.key_path())
                raise KeyError(f"required field '{path}' missing for column {self.name}")
            return None
        if self.converter is not None:
            return self.converter(value)
        return value


@dataclass(frozen=True)
class TableSchema:
    """Everything the row store needs to create and maintain one table."""

    table_name: str
    key_column: Column
    timestamp_column: str
    columns: Sequence[Column] = field(default_factory=tuple)
    store_enrichment: bool = False
    index_prefix: str = ""

    def column(self, name: str) -> Column:
        for col in self.all_columns():
            if col.name == name:
                return col
        raise KeyError(name)

    def all_columns(self) -> Tuple[Column, ...]:
        return (self.key_column, *self.columns)

    def indexed_columns(self) -> Tuple[Column, ...]:
        return tuple(col for col in self.columns if col.index)

    def index_name(self, column: Column) -> str:
        prefix = self.index_prefix or self.table_name
        return f"{prefix}_{column.name}_idx"


__all__ = [
    "BIGINT",
    "BOOLEAN",
    "Column",
    "DATA_COLUMN",
    "ENRICHMENT_COLUMN",
    "INTEGER",
    "NUMERIC",
    "OBJECT",
    "PRIMARY_KEY_COLUMN",
    "ROW_CREATED_AT_COLUMN",
    "TEXT",
    "TIMESTAMP",
    "TableSchema",
    "parse_timestamp",
    "to_int",
    "to_text",
]
