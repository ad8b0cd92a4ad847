from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from authkit.auth.errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class DatabaseConfig:
    db_auto_migrate: bool

    # Postgres connection (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]

    def __repr__(self) -> str:
        # Avoid logging secrets; host/db/user are fine.
        return (
            f"DatabaseConfig(dsn={'set' if self.postgres_dsn else 'unset'}, host={self.postgres_host!r}, "
            f"port={self.postgres_port}, db={self.postgres_db!r}, user={self.postgres_user!r})"
        )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env = os.environ if env is None else env
    dsn = (env.get("POSTGRES_DSN") or "").strip() or None
    host = (env.get("POSTGRES_HOST") or "").strip() or None
    port_raw = (env.get("POSTGRES_PORT") or "").strip() or "5432"
    try:
        port = int(port_raw)
    except ValueError:
        port = 5432
    db = (env.get("POSTGRES_DB") or "").strip() or None
    user = (env.get("POSTGRES_USER") or "").strip() or None
    pw = (env.get("POSTGRES_PASSWORD") or "").strip() or None

    return DatabaseConfig(
        db_auto_migrate=_env_bool(env, "DB_AUTO_MIGRATE", False),
        postgres_dsn=dsn,
        postgres_host=host,
        postgres_port=port,
        postgres_db=db,
        postgres_user=user,
        postgres_password=pw,
    )


def build_postgres_dsn(cfg: DatabaseConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # psycopg's conninfo builder quotes/escapes special characters (spaces, quotes) in passwords.
    from psycopg.conninfo import make_conninfo  # type: ignore[import-not-found]

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )


def open_connection(cfg: DatabaseConfig) -> Any:
    """
    Open the process-wide Postgres connection in autocommit mode.

    Raises:
        DatabaseUnavailableError: Postgres is not configured or cannot be reached
    """
    import psycopg  # type: ignore[import-not-found]

    dsn = build_postgres_dsn(cfg)
    if not dsn:
        raise DatabaseUnavailableError("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars)")
    try:
        # Autocommit: AuthStore scopes each write with `conn.transaction()`.
        conn = psycopg.connect(dsn, autocommit=True)
    except psycopg.Error as e:
        raise DatabaseUnavailableError(f"Cannot connect to Postgres ({cfg.postgres_host or 'dsn'}): {e}") from e
    logger.info("Connected to Postgres: host=%s db=%s user=%s", cfg.postgres_host, cfg.postgres_db, cfg.postgres_user)
    return conn
