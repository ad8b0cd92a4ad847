#!/usr/bin/env python3
"""
authkit - email/password and Google/GitHub sign-in backed by Postgres.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

logger = logging.getLogger("authkit")


def check_config() -> int:
    """Assemble the auth configuration against the live database and report it."""
    from authkit.api.server import bootstrap

    handler = bootstrap()
    cfg = handler.config
    print(f"emailAndPassword: {cfg.credential_auth}")
    print(f"socialProviders:  {', '.join(cfg.enabled_providers) or 'none'}")
    print(f"baseUrl:          {cfg.base_url or 'unset (social login unavailable)'}")
    print(f"sessionSecret:    {'set' if cfg.secret else 'unset (ephemeral)'}")
    cfg.database.connection.close()
    return 0


def migrate() -> int:
    from authkit.db.config import build_postgres_dsn, load_database_config
    from authkit.db.migrate import apply_migrations

    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    n, versions = apply_migrations(dsn=dsn)
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def purge_sessions() -> int:
    """Delete expired sessions."""
    from authkit.auth.adapter import postgres_adapter
    from authkit.auth.store import AuthStore
    from authkit.db.config import load_database_config, open_connection

    conn = open_connection(load_database_config())
    try:
        n = AuthStore(postgres_adapter(conn)).delete_expired_sessions()
    finally:
        conn.close()
    print(f"Deleted {n} expired session(s).")
    return 0


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="authkit authentication server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Apply the auth schema
  python main.py --migrate

  # Validate env + database without serving
  python main.py --check-config

  # Serve the auth routes
  python main.py --serve --port 8000
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending auth schema migrations and exit")
    parser.add_argument(
        "--check-config", action="store_true", help="Build the auth configuration, report it and exit"
    )
    parser.add_argument("--purge-sessions", action="store_true", help="Delete expired sessions and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Server listen port (default: 8000)")

    args = parser.parse_args()

    from authkit.auth.errors import AuthConfigError, DatabaseUnavailableError

    try:
        if args.migrate:
            return migrate()

        if args.check_config:
            return check_config()

        if args.purge_sessions:
            return purge_sessions()

        if args.serve:
            from authkit.api.server import run

            run(host=args.host, port=args.port)
            return 0

        parser.print_help()
        return 0

    except AuthConfigError as e:
        logger.error("Startup aborted: invalid auth configuration: %s", e)
        return 2
    except DatabaseUnavailableError as e:
        logger.error("Startup aborted: database unavailable: %s", e)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
