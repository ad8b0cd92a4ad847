from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from authkit.auth.config import build_auth_config
from authkit.auth.session import SessionManager, session_cookie_name
from authkit.auth.store import utcnow


@pytest.fixture
def cfg(fake_conn):  # type: ignore[no-untyped-def]
    return build_auth_config({"AUTH_SECRET": "test-secret-key-for-testing-purposes-only"}, fake_conn)


def test_cookie_name_depends_on_secure(fake_conn) -> None:
    assert session_cookie_name(build_auth_config({}, fake_conn)) == "authkit_session"
    secure = build_auth_config({"AUTH_COOKIE_SECURE": "1"}, fake_conn)
    assert session_cookie_name(secure) == "__Host-authkit_session"


def test_create_and_resolve(store, cfg) -> None:
    user = store.create_user(email="ada@example.com", name="Ada")
    sessions = SessionManager(cfg, store, cfg.secret)
    session, cookie_value = sessions.create(user, ip_address="10.0.0.1", user_agent="pytest")

    # The cookie carries a signed value, not the raw token.
    assert cookie_value != session.token
    found = sessions.resolve(cookie_value)
    assert found is not None
    assert found[0].id == session.id
    assert found[1].id == user.id
    assert session.expires_at > utcnow() + timedelta(seconds=cfg.session_ttl_seconds - 60)


def test_tampered_or_foreign_cookie_is_rejected(store, cfg) -> None:
    user = store.create_user(email="ada@example.com")
    sessions = SessionManager(cfg, store, cfg.secret)
    _, cookie_value = sessions.create(user)

    assert sessions.resolve(cookie_value + "x") is None
    assert sessions.resolve("") is None
    assert sessions.resolve(None) is None
    other = SessionManager(cfg, store, "another-secret")
    assert other.resolve(cookie_value) is None


def test_expired_session_is_removed(store, cfg) -> None:
    user = store.create_user(email="ada@example.com")
    sessions = SessionManager(cfg, store, cfg.secret)
    session, cookie_value = sessions.create(user)
    store.sessions[session.token] = replace(session, expires_at=utcnow() - timedelta(seconds=1))

    assert sessions.resolve(cookie_value) is None
    assert session.token not in store.sessions


def test_revoke(store, cfg) -> None:
    user = store.create_user(email="ada@example.com")
    sessions = SessionManager(cfg, store, cfg.secret)
    session, cookie_value = sessions.create(user)
    sessions.revoke(cookie_value)
    assert session.token not in store.sessions
    # Revoking garbage is a no-op.
    sessions.revoke("garbage")


def test_cookie_kwargs(store, cfg) -> None:
    sessions = SessionManager(cfg, store, cfg.secret)
    kw = sessions.cookie_kwargs("v")
    assert kw["key"] == "authkit_session"
    assert kw["httponly"] is True
    assert kw["max_age"] == cfg.session_ttl_seconds
    cleared = sessions.clear_cookie_kwargs()
    assert cleared["max_age"] == 0 and cleared["value"] == ""
