from __future__ import annotations

import logging
from typing import Optional

import bcrypt
import psycopg

from authkit.auth.config import AuthConfig
from authkit.auth.models import AuthUser, User
from authkit.auth.store import AuthStore
from authkit.auth.util import normalize_email

logger = logging.getLogger(__name__)


class SignUpError(ValueError):
    """Email/password sign-up was rejected; `status_code` maps onto the HTTP response."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password(cfg: AuthConfig, password: str) -> None:
    if len(password) < cfg.password_min_length:
        raise SignUpError(f"Password must be at least {cfg.password_min_length} characters")
    if len(password) > cfg.password_max_length:
        raise SignUpError(f"Password must be at most {cfg.password_max_length} characters")


def sign_up_email(store: AuthStore, cfg: AuthConfig, *, email: str, password: str, name: Optional[str]) -> User:
    """
    Register a new user with an email/password credential account.

    Raises:
        SignUpError: Invalid email, password length, or email already registered (422)
    """
    email = normalize_email(email)
    if "@" not in email:
        raise SignUpError("Invalid email")
    validate_password(cfg, password)

    if store.get_user_by_email(email) is not None:
        raise SignUpError("User already exists", status_code=422)

    try:
        user = store.create_credential_user(
            email=email,
            name=(name or "").strip() or None,
            password_hash=hash_password(password),
        )
    except psycopg.IntegrityError:
        # Lost a race with a concurrent sign-up for the same email.
        raise SignUpError("User already exists", status_code=422) from None

    logger.info("Registered user %s via email/password", user.id)
    return user


def authenticate_email(store: AuthStore, email: str, password: str) -> Optional[AuthUser]:
    """
    Authenticate a user with email/password.

    Returns:
        AuthUser if authentication succeeds, None otherwise
    """
    user = store.get_user_by_email(email)
    if user is None:
        return None

    account = store.get_credential_account(user.id)
    if account is None or not account.password_hash:
        # Social-only user: no password to check against.
        return None

    if not verify_password(password, account.password_hash):
        return None

    return user.to_auth_user()
