from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

CREDENTIAL_PROVIDER_ID = "credential"


@dataclass(frozen=True)
class AuthUser:
    """Authenticated user as seen by request handlers (from email/password or a social provider)."""

    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False


@dataclass
class User:
    """User row stored in PostgreSQL."""

    id: str
    email: str
    name: Optional[str]
    image: Optional[str]
    email_verified: bool
    created_at: datetime
    updated_at: datetime

    def to_auth_user(self) -> AuthUser:
        return AuthUser(
            id=self.id,
            email=self.email,
            name=self.name,
            image=self.image,
            email_verified=self.email_verified,
        )


@dataclass
class Account:
    """Login method linked to a user: the credential account or a social provider account."""

    id: str
    user_id: str
    provider_id: str  # credential|google|github
    account_id: str
    password_hash: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class Session:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class SocialProfile:
    """Normalized identity returned by a social provider after code exchange."""

    provider_id: str
    account_id: str
    email: Optional[str]
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None
