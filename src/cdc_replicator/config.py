"""Runtime configuration helpers for the replicator engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for engine configuration."""

    db_mode: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_schema: str
    replication_schema: str
    api_base_url: str
    source_http_timeout_seconds: float = 30.0
    stale_row_chunk_size: int = 10_000
    stale_row_increment_hours: float = 1.0
    stale_row_floor_days: Optional[float] = None
    stale_row_ceiling_days: Optional[float] = None
    log_level: str = "INFO"


def _coerce_db_mode(value: Optional[str]) -> str:
    """Translate DB_MODE env var to a supported value."""
    if value is None:
        return "mock"
    normalized = value.strip().lower()
    if normalized in {"mock", "local"}:
        return normalized
    return "mock"


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    db_mode = _coerce_db_mode(os.getenv("DB_MODE"))
    db_host = os.getenv("PGHOST", "localhost")
    db_port = int(os.getenv("PGPORT", "5432"))
    db_name = os.getenv("PGDATABASE", "cdc_replicator")
    db_user = os.getenv("PGUSER", "postgres")
    db_password = os.getenv("PGPASSWORD", "")
    db_schema = os.getenv("PGSCHEMA", "public")
    replication_schema = os.getenv("REPLICATION_SCHEMA", "public")

    api_base_url = os.getenv("API_BASE_URL", "http://localhost:18001").strip()
    if api_base_url.endswith("/"):
        api_base_url = api_base_url.rstrip("/")

    source_http_timeout_seconds = float(
        os.getenv("SOURCE_HTTP_TIMEOUT_SECONDS", "30")
    )
    stale_row_chunk_size = int(os.getenv("STALE_ROW_CHUNK_SIZE", "10000"))
    stale_row_increment_hours = float(os.getenv("STALE_ROW_INCREMENT_HOURS", "1"))
    stale_row_floor_days = _optional_float(os.getenv("STALE_ROW_FLOOR_DAYS"))
    stale_row_ceiling_days = _optional_float(os.getenv("STALE_ROW_CEILING_DAYS"))
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return Settings(
        db_mode=db_mode,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_schema=db_schema,
        replication_schema=replication_schema,
        api_base_url=api_base_url,
        source_http_timeout_seconds=source_http_timeout_seconds,
        stale_row_chunk_size=stale_row_chunk_size,
        stale_row_increment_hours=stale_row_increment_hours,
        stale_row_floor_days=stale_row_floor_days,
        stale_row_ceiling_days=stale_row_ceiling_days,
        log_level=log_level,
    )
