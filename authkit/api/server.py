"""
HTTP server for authkit.

Builds the AuthConfig once at startup, hands it to the auth engine and mounts the
resulting routes. Anything outside the auth routes and health check requires a session.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Mapping, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from authkit.auth.adapter import ping
from authkit.auth.config import build_auth_config
from authkit.auth.deps import authenticate_request, require_user
from authkit.auth.engine import AuthHandler, init_auth_engine
from authkit.auth.models import AuthUser
from authkit.db.config import load_database_config, open_connection
from authkit.db.migrate import maybe_auto_migrate

logger = logging.getLogger(__name__)


def _is_public_path(path: str, auth_prefix: str) -> bool:
    if path == "/healthz":
        return True
    # Auth routes enforce their own rules (sign-in must work without a session).
    if auth_prefix and (path == auth_prefix or path.startswith(auth_prefix + "/")):
        return True
    return False


def create_app(handler: AuthHandler) -> FastAPI:
    """Create the FastAPI application around an initialized AuthHandler."""
    app = FastAPI(title="authkit")
    app.state.auth = handler
    app.include_router(handler.router)

    @app.on_event("shutdown")
    def _shutdown_close_db() -> None:
        conn = handler.config.database.connection
        try:
            conn.close()
        except Exception as e:
            logger.warning("Failed to close database connection: %s", str(e))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests and enforce sign-in outside public paths."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            path = request.url.path or ""
            if request.method != "OPTIONS" and not _is_public_path(path, handler.prefix):
                # Fail closed: anything not explicitly public requires auth.
                user = authenticate_request(request)
                if user is None:
                    # No `WWW-Authenticate`: browsers would show a basic-auth modal.
                    return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
                request.state.user = user

            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/me")
    def me(user: AuthUser = Depends(require_user)) -> Dict[str, Any]:
        return {
            "ok": True,
            "user": {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "image": user.image,
                "emailVerified": user.email_verified,
            },
        }

    return app


def bootstrap(env: Optional[Mapping[str, str]] = None) -> AuthHandler:
    """
    Startup sequence: migrate (optional), connect, assemble the AuthConfig, check the
    database, start the engine.

    Raises:
        AuthConfigError: Invalid or incomplete auth configuration
        DatabaseUnavailableError: Postgres missing or unreachable
    """
    env = os.environ if env is None else env
    db_cfg = load_database_config(env)
    logger.info("Database config: %r", db_cfg)

    did_attempt, msg = maybe_auto_migrate(db_cfg)
    if did_attempt:
        logger.info("DB migrations: %s", msg)

    conn = open_connection(db_cfg)
    try:
        config = build_auth_config(env, conn)
        ping(config.database)
    except Exception:
        conn.close()
        raise
    logger.info("Auth config: %r", config)
    return init_auth_engine(config)


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    app = create_app(bootstrap())
    logger.info("Starting authkit server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
