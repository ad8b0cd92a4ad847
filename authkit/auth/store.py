from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from authkit.auth.adapter import DatabaseAdapter
from authkit.auth.models import CREDENTIAL_PROVIDER_ID, Account, Session, User
from authkit.auth.util import new_id, normalize_email

logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, email, name, image, email_verified, created_at, updated_at"
_ACCOUNT_COLUMNS = "id, user_id, provider_id, account_id, password_hash, access_token, refresh_token, id_token, scope"
_SESSION_COLUMNS = "id, token, user_id, expires_at, ip_address, user_agent"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _user_from_row(row: Tuple[Any, ...]) -> User:
    user_id, email, name, image, email_verified, created_at, updated_at = row
    return User(
        id=user_id,
        email=email,
        name=name,
        image=image,
        email_verified=bool(email_verified),
        created_at=created_at,
        updated_at=updated_at,
    )


def _account_from_row(row: Tuple[Any, ...]) -> Account:
    account_pk, user_id, provider_id, account_id, password_hash, access_token, refresh_token, id_token, scope = row
    return Account(
        id=account_pk,
        user_id=user_id,
        provider_id=provider_id,
        account_id=account_id,
        password_hash=password_hash,
        access_token=access_token,
        refresh_token=refresh_token,
        id_token=id_token,
        scope=scope,
    )


def _session_from_row(row: Tuple[Any, ...]) -> Session:
    session_id, token, user_id, expires_at, ip_address, user_agent = row
    return Session(
        id=session_id,
        token=token,
        user_id=user_id,
        expires_at=expires_at,
        ip_address=ip_address,
        user_agent=user_agent,
    )


class AuthStore:
    """
    Users, linked accounts and sessions in PostgreSQL.

    Operates on the adapter's existing connection, which must be in autocommit mode
    (see `authkit.db.config.open_connection`); every write runs in its own
    `conn.transaction()`. Request handlers share the connection across threads, so each
    store operation holds `_lock` from its first statement to its commit.
    Tables come from `authkit/db/migrations`.
    """

    def __init__(self, adapter: DatabaseAdapter):
        self._adapter = adapter
        self._lock = threading.RLock()

    @property
    def conn(self):  # type: ignore[no-untyped-def]
        return self._adapter.connection

    # ---- users ----

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._lock, self.conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM auth_users WHERE id = %s", (user_id,))
            row = cur.fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock, self.conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM auth_users WHERE email = %s", (normalize_email(email),))
            row = cur.fetchone()
        return _user_from_row(row) if row else None

    def _insert_user(  # type: ignore[no-untyped-def]
        self, cur, *, email: str, name: Optional[str], image: Optional[str], email_verified: bool
    ) -> User:
        cur.execute(
            f"""
            INSERT INTO auth_users (id, email, name, image, email_verified)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {_USER_COLUMNS}
            """,
            (new_id(), normalize_email(email), name, image, email_verified),
        )
        row = cur.fetchone()
        if not row:
            raise ValueError("Failed to create user")
        return _user_from_row(row)

    def _insert_account(  # type: ignore[no-untyped-def]
        self,
        cur,
        *,
        user_id: str,
        provider_id: str,
        account_id: str,
        password_hash: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        id_token: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> Account:
        cur.execute(
            f"""
            INSERT INTO auth_accounts
              (id, user_id, provider_id, account_id, password_hash, access_token, refresh_token, id_token, scope)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (new_id(), user_id, provider_id, account_id, password_hash, access_token, refresh_token, id_token, scope),
        )
        row = cur.fetchone()
        if not row:
            raise ValueError("Failed to create account")
        return _account_from_row(row)

    def create_user(
        self,
        *,
        email: str,
        name: Optional[str] = None,
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        """
        Raises:
            psycopg.IntegrityError: If the email already exists
        """
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            return self._insert_user(cur, email=email, name=name, image=image, email_verified=email_verified)

    def create_credential_user(self, *, email: str, name: Optional[str], password_hash: str) -> User:
        """
        Create a user together with its credential account in one transaction.

        Raises:
            psycopg.IntegrityError: If the email already exists
        """
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            user = self._insert_user(cur, email=email, name=name, image=None, email_verified=False)
            self._insert_account(
                cur,
                user_id=user.id,
                provider_id=CREDENTIAL_PROVIDER_ID,
                account_id=user.id,
                password_hash=password_hash,
            )
        return user

    # ---- accounts ----

    def get_account(self, provider_id: str, account_id: str) -> Optional[Account]:
        with self._lock, self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM auth_accounts WHERE provider_id = %s AND account_id = %s",
                (provider_id, account_id),
            )
            row = cur.fetchone()
        return _account_from_row(row) if row else None

    def get_credential_account(self, user_id: str) -> Optional[Account]:
        with self._lock, self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM auth_accounts WHERE user_id = %s AND provider_id = %s",
                (user_id, CREDENTIAL_PROVIDER_ID),
            )
            row = cur.fetchone()
        return _account_from_row(row) if row else None

    def link_account(self, *, user_id: str, provider_id: str, account_id: str, **tokens: Optional[str]) -> Account:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            return self._insert_account(cur, user_id=user_id, provider_id=provider_id, account_id=account_id, **tokens)

    def create_social_user(
        self,
        *,
        email: str,
        name: Optional[str],
        image: Optional[str],
        email_verified: bool,
        provider_id: str,
        account_id: str,
        **tokens: Optional[str],
    ) -> User:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            user = self._insert_user(cur, email=email, name=name, image=image, email_verified=email_verified)
            self._insert_account(cur, user_id=user.id, provider_id=provider_id, account_id=account_id, **tokens)
        return user

    def update_account_tokens(
        self,
        account_pk: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        id_token: Optional[str],
        scope: Optional[str],
    ) -> None:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_accounts
                SET access_token = %s,
                    refresh_token = COALESCE(%s, refresh_token),
                    id_token = %s,
                    scope = %s,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (access_token, refresh_token, id_token, scope, account_pk),
            )

    # ---- sessions ----

    def create_session(
        self,
        *,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO auth_sessions (id, token, user_id, expires_at, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_SESSION_COLUMNS}
                """,
                (new_id(), token, user_id, expires_at, ip_address, user_agent),
            )
            row = cur.fetchone()
        if not row:
            raise ValueError("Failed to create session")
        return _session_from_row(row)

    def get_session(self, token: str) -> Optional[Tuple[Session, User]]:
        """Return the live session for `token` and its user; expired sessions are removed."""
        with self._lock:
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT s.id, s.token, s.user_id, s.expires_at, s.ip_address, s.user_agent,
                           u.id, u.email, u.name, u.image, u.email_verified, u.created_at, u.updated_at
                    FROM auth_sessions s
                    JOIN auth_users u ON u.id = s.user_id
                    WHERE s.token = %s
                    """,
                    (token,),
                )
                row = cur.fetchone()
            if not row:
                return None

            session = _session_from_row(row[:6])
            user = _user_from_row(row[6:])
            if session.expires_at <= utcnow():
                logger.debug("Session %s expired at %s", session.id, session.expires_at)
                self.delete_session(token)
                return None
        return session, user

    def delete_session(self, token: str) -> None:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            cur.execute("DELETE FROM auth_sessions WHERE token = %s", (token,))

    def delete_expired_sessions(self) -> int:
        with self._lock, self.conn.transaction(), self.conn.cursor() as cur:
            cur.execute("DELETE FROM auth_sessions WHERE expires_at <= NOW()")
            n = cur.rowcount
        return max(int(n or 0), 0)
