"""
Pytest config.

Tests import the local `authkit/` package from the repo root; pin the repo root on
sys.path so a global `pytest` entrypoint collects the same way as `python -m pytest`.
"""

from __future__ import annotations

import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from authkit.auth.models import CREDENTIAL_PROVIDER_ID, Account, Session, User  # noqa: E402
from authkit.auth.store import utcnow  # noqa: E402
from authkit.auth.util import new_id, normalize_email  # noqa: E402


class FakeConnection:
    """Stand-in for a live psycopg connection; tests assert it is never used."""

    closed = False

    def __init__(self) -> None:
        self.calls: List[str] = []

    def cursor(self):  # type: ignore[no-untyped-def]
        self.calls.append("cursor")
        raise AssertionError("unexpected database access")

    def close(self) -> None:
        self.calls.append("close")
        self.closed = True


class InMemoryStore:
    """Dict-backed replacement for AuthStore with the same method surface."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        return next((u for u in self.users.values() if u.email == email), None)

    def create_user(self, *, email, name=None, image=None, email_verified=False) -> User:
        now = utcnow()
        user = User(
            id=new_id(),
            email=normalize_email(email),
            name=name,
            image=image,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        return user

    def create_credential_user(self, *, email, name, password_hash) -> User:  # type: ignore[no-untyped-def]
        user = self.create_user(email=email, name=name)
        self.link_account(
            user_id=user.id, provider_id=CREDENTIAL_PROVIDER_ID, account_id=user.id, password_hash=password_hash
        )
        return user

    def get_account(self, provider_id: str, account_id: str) -> Optional[Account]:
        return next(
            (a for a in self.accounts.values() if a.provider_id == provider_id and a.account_id == account_id), None
        )

    def get_credential_account(self, user_id: str) -> Optional[Account]:
        return next(
            (a for a in self.accounts.values() if a.user_id == user_id and a.provider_id == CREDENTIAL_PROVIDER_ID),
            None,
        )

    def link_account(self, *, user_id, provider_id, account_id, **tokens) -> Account:  # type: ignore[no-untyped-def]
        account = Account(id=new_id(), user_id=user_id, provider_id=provider_id, account_id=account_id, **tokens)
        self.accounts[account.id] = account
        return account

    def create_social_user(  # type: ignore[no-untyped-def]
        self, *, email, name, image, email_verified, provider_id, account_id, **tokens
    ) -> User:
        user = self.create_user(email=email, name=name, image=image, email_verified=email_verified)
        self.link_account(user_id=user.id, provider_id=provider_id, account_id=account_id, **tokens)
        return user

    def update_account_tokens(self, account_pk, *, access_token, refresh_token, id_token, scope) -> None:
        a = self.accounts[account_pk]
        self.accounts[account_pk] = replace(
            a,
            access_token=access_token,
            refresh_token=refresh_token or a.refresh_token,
            id_token=id_token,
            scope=scope,
        )

    def create_session(self, *, user_id, token, expires_at: datetime, ip_address=None, user_agent=None) -> Session:
        session = Session(
            id=new_id(),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.sessions[token] = session
        return session

    def get_session(self, token: str) -> Optional[Tuple[Session, User]]:
        session = self.sessions.get(token)
        if session is None:
            return None
        if session.expires_at <= utcnow():
            del self.sessions[token]
            return None
        return session, self.users[session.user_id]

    def delete_session(self, token: str) -> None:
        self.sessions.pop(token, None)


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture(autouse=True)
def _fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    """Cost 12 makes every sign-up slow; tests only need a real bcrypt hash."""
    import bcrypt

    real_gensalt = bcrypt.gensalt
    monkeypatch.setattr(bcrypt, "gensalt", lambda rounds=12: real_gensalt(rounds=4))
