"""Shared SQLite plumbing for the work and control-plane repositories."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# Several processes share one database file; readers must not wait on a writer.
CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for the orchestrator database, creating its directory on first use.

    Connections are not pooled: every repository call opens its own short-lived
    connection so no process holds a write lock between calls.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    wait_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, wait_ms / 1000.0)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        configure_connection(dbapi_connection, busy_timeout_ms=wait_ms)

    return engine


def configure_connection(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    """Apply the orchestrator's per-connection SQLite settings."""

    cursor = connection.cursor()
    try:
        for pragma in (*CONNECTION_PRAGMAS, f"PRAGMA busy_timeout = {busy_timeout_ms}"):
            cursor.execute(pragma)
    finally:
        cursor.close()


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC as stored by SQLite."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def dump_json(payload: dict[str, object]) -> str | None:
    if not payload:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def load_json(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}
