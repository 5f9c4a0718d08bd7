"""Common helpers for storage repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to naive UTC for storage columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the store."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def build_engine(
    *,
    database_url: str,
    busy_timeout_ms: int = 5_000,
    pool_size: int = 5,
) -> Engine:
    """Build SQLAlchemy engine with a consistent per-backend policy."""

    if is_sqlite_url(database_url):
        engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,
                "timeout": max(1.0, busy_timeout_ms / 1000.0),
            },
        )
        event.listen(
            engine,
            "connect",
            lambda dbapi_connection, _: _apply_sqlite_pragmas(
                dbapi_connection,
                busy_timeout_ms=busy_timeout_ms,
            ),
        )
        return engine

    return create_engine(
        database_url,
        pool_size=pool_size,
        pool_pre_ping=True,
    )


def pool_status(engine: Engine) -> dict[str, object]:
    """Best-effort connection pool counters for health reporting."""

    pool = engine.pool
    status: dict[str, object] = {"pool": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        probe = getattr(pool, name, None)
        if callable(probe):
            status[name] = probe()
    return status


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
