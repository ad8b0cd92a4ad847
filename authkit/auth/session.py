from __future__ import annotations

from datetime import timedelta
from typing import Optional, Tuple

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from authkit.auth.config import AuthConfig
from authkit.auth.models import Session, User
from authkit.auth.store import AuthStore, utcnow
from authkit.auth.util import random_token

SESSION_SALT = "authkit-session-v1"


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-authkit_session" if cfg.cookie_secure else "authkit_session"


class SessionManager:
    """
    Database-backed sessions carried in a signed cookie.

    The cookie holds only the opaque session token, signed so tampered values are
    rejected before touching the database.
    """

    def __init__(self, cfg: AuthConfig, store: AuthStore, secret: str):
        self._cfg = cfg
        self._store = store
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=SESSION_SALT)

    @property
    def cookie_name(self) -> str:
        return session_cookie_name(self._cfg)

    def create(
        self, user: User, *, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Tuple[Session, str]:
        """Persist a new session for `user`; returns it with the signed cookie value."""
        token = random_token(32)
        session = self._store.create_session(
            user_id=user.id,
            token=token,
            expires_at=utcnow() + timedelta(seconds=self._cfg.session_ttl_seconds),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
        )
        return session, self._serializer.dumps(token)

    def token_from_cookie(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            token = self._serializer.loads(value, max_age=self._cfg.session_ttl_seconds)
        except (BadSignature, BadTimeSignature):
            return None
        return token if isinstance(token, str) and token else None

    def resolve(self, value: Optional[str]) -> Optional[Tuple[Session, User]]:
        token = self.token_from_cookie(value)
        if token is None:
            return None
        return self._store.get_session(token)

    def revoke(self, value: Optional[str]) -> None:
        token = self.token_from_cookie(value)
        if token is not None:
            self._store.delete_session(token)

    def cookie_kwargs(self, value: str) -> dict:
        return {
            "key": self.cookie_name,
            "value": value,
            "max_age": self._cfg.session_ttl_seconds,
            "httponly": True,
            "secure": self._cfg.cookie_secure,
            "samesite": "lax",
            "path": "/",
        }

    def clear_cookie_kwargs(self) -> dict:
        return {
            "key": self.cookie_name,
            "value": "",
            "max_age": 0,
            "httponly": True,
            "secure": self._cfg.cookie_secure,
            "samesite": "lax",
            "path": "/",
        }
