from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from authkit.auth.errors import DatabaseUnavailableError, UnsupportedDialectError

SUPPORTED_DIALECTS = ("postgresql",)


@dataclass(frozen=True)
class DatabaseAdapter:
    """An existing database connection plus the dialect the engine should speak to it."""

    connection: Any
    dialect: str = "postgresql"


def _is_closed(connection: Any) -> bool:
    # psycopg exposes `closed` as a bool; anything else (mocks, other drivers) counts as open.
    return getattr(connection, "closed", False) is True


def postgres_adapter(connection: Any, *, dialect: str = "postgresql") -> DatabaseAdapter:
    """
    Wrap an already-connected Postgres connection.

    The adapter never opens a connection and performs no I/O here.
    """
    d = (dialect or "").strip().lower()
    if d not in SUPPORTED_DIALECTS:
        raise UnsupportedDialectError(dialect)
    if connection is None:
        raise DatabaseUnavailableError("No database connection supplied")
    if _is_closed(connection):
        raise DatabaseUnavailableError("Database connection is closed")
    return DatabaseAdapter(connection=connection, dialect=d)


def ping(adapter: DatabaseAdapter) -> None:
    """
    Round-trip `SELECT 1` through the adapter's connection.

    Raises DatabaseUnavailableError if the database cannot be reached.
    """
    import psycopg  # type: ignore[import-not-found]

    conn = adapter.connection
    if _is_closed(conn):
        raise DatabaseUnavailableError("Database connection is closed")
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
    except psycopg.Error as e:
        raise DatabaseUnavailableError(f"Database is unreachable: {e}") from e
