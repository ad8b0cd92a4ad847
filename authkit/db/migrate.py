from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from authkit.auth.errors import DatabaseUnavailableError
from authkit.db.config import DatabaseConfig, build_postgres_dsn, load_database_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Stable advisory lock key so concurrent server replicas migrate one at a time.
MIGRATION_LOCK_KEY = 402918374650  # bigint


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str


def _load_migration(path: Path) -> Migration:
    raw = path.read_bytes()
    return Migration(
        version=path.stem,
        path=path,
        checksum=hashlib.sha256(raw).hexdigest(),
        sql=raw.decode("utf-8"),
    )


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    """Bundled `NNN_name.sql` files, ordered by file name."""
    if not directory.is_dir():
        return []
    return [_load_migration(p) for p in sorted(directory.glob("*.sql")) if p.is_file()]


def _connect(dsn: str):  # type: ignore[no-untyped-def]
    import psycopg  # type: ignore[import-not-found]

    try:
        return psycopg.connect(dsn)
    except psycopg.Error as e:
        raise DatabaseUnavailableError(f"Cannot connect to Postgres to migrate the auth schema: {e}") from e


def _applied_checksums(conn) -> Dict[str, str]:  # type: ignore[no-untyped-def]
    conn.execute("""
        CREATE TABLE IF NOT EXISTS auth_schema_migrations (
          version text PRIMARY KEY,
          checksum text NOT NULL,
          applied_at timestamptz NOT NULL DEFAULT now()
        );
        """)
    rows = conn.execute("SELECT version, checksum FROM auth_schema_migrations;").fetchall()
    return {str(version): str(checksum) for version, checksum in rows}


def pending_migrations(applied: Mapping[str, str], migrations: Iterable[Migration]) -> List[Migration]:
    """
    Migrations not yet recorded in `applied` (version -> checksum), in file order.

    Raises:
        RuntimeError: An applied migration file was edited after it ran
    """
    pending: List[Migration] = []
    for m in migrations:
        recorded = applied.get(m.version)
        if recorded is None:
            pending.append(m)
        elif recorded != m.checksum:
            raise RuntimeError(
                f"Auth schema migration {m.version} was modified after it was applied "
                f"(db={recorded[:12]} file={m.checksum[:12]})"
            )
    return pending


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
) -> Tuple[int, List[str]]:
    """
    Apply pending auth schema migrations, one transaction each, under an advisory lock.

    Returns: (applied_count, applied_versions)

    Raises:
        DatabaseUnavailableError: Postgres cannot be reached
    """
    migs = list(migrations) if migrations is not None else load_migrations()
    done: List[str] = []

    with _connect(dsn) as conn:
        conn.execute("SELECT pg_advisory_lock(%s);", (MIGRATION_LOCK_KEY,))
        try:
            for m in pending_migrations(_applied_checksums(conn), migs):
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO auth_schema_migrations(version, checksum) VALUES (%s, %s);",
                        (m.version, m.checksum),
                    )
                logger.info("Applied auth schema migration %s", m.version)
                done.append(m.version)
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s);", (MIGRATION_LOCK_KEY,))

    return len(done), done


def maybe_auto_migrate(cfg: Optional[DatabaseConfig] = None) -> Tuple[bool, str]:
    """
    Migrate at startup when DB_AUTO_MIGRATE is on and Postgres is configured.

    Returns: (did_attempt, message)
    """
    cfg = cfg or load_database_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    n, versions = apply_migrations(dsn=dsn)
    if n:
        return True, f"Applied {n} migration(s): {', '.join(versions)}"
    return True, "No pending migrations"
