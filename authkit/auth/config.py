from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from authkit.auth.adapter import DatabaseAdapter, postgres_adapter
from authkit.auth.errors import AuthConfigError, MissingCredentialError, UnknownProviderError

logger = logging.getLogger(__name__)

# Provider name -> (client id env key, client secret env key)
SOCIAL_PROVIDER_ENV: Dict[str, Tuple[str, str]] = {
    "google": ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"),
    "github": ("GITHUB_CLIENT_ID", "GITHUB_CLIENT_SECRET"),
}

POLICY_FAIL = "fail"
POLICY_DISABLE = "disable"
MISSING_PROVIDER_POLICIES = (POLICY_FAIL, POLICY_DISABLE)

DEFAULT_SESSION_TTL_SECONDS = 7 * 24 * 3600
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


@dataclass(frozen=True)
class ProviderCredential:
    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks.
        return f"ProviderCredential(client_id={self.client_id!r}, client_secret='***')"


@dataclass(frozen=True)
class AuthConfig:
    # Storage
    database: DatabaseAdapter

    # Login methods
    credential_auth: bool
    social_providers: Mapping[str, ProviderCredential]

    # Public origin for OAuth redirects (AUTH_BASE_URL)
    base_url: Optional[str]

    # Session configuration
    secret: Optional[str]
    session_ttl_seconds: int
    cookie_secure: bool

    # Email/password constraints
    password_min_length: int = PASSWORD_MIN_LENGTH
    password_max_length: int = PASSWORD_MAX_LENGTH

    missing_provider_policy: str = POLICY_FAIL

    @property
    def social_enabled(self) -> bool:
        return bool(self.social_providers)

    @property
    def enabled_providers(self) -> List[str]:
        return sorted(self.social_providers)

    def provider(self, name: str) -> Optional[ProviderCredential]:
        return self.social_providers.get((name or "").strip().lower())

    def __repr__(self) -> str:
        return (
            f"AuthConfig(dialect={self.database.dialect!r}, credential_auth={self.credential_auth}, "
            f"social_providers={self.enabled_providers}, base_url={self.base_url!r}, "
            f"secret={'set' if self.secret else 'unset'}, session_ttl_seconds={self.session_ttl_seconds})"
        )


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    return (env.get(key, "") or "").strip() or None


def _get_verbatim(env: Mapping[str, str], key: str) -> Optional[str]:
    # Credentials are passed through untouched; whitespace only decides blankness.
    value = env.get(key) or ""
    return value if value.strip() else None


def _parse_csv(value: Optional[str]) -> List[str]:
    items = [x.strip().lower() for x in (value or "").split(",")]
    return [x for x in items if x]


def _parse_policy(env: Mapping[str, str], policy: Optional[str]) -> str:
    raw = (policy or _get(env, "AUTH_MISSING_PROVIDER_POLICY") or POLICY_FAIL).strip().lower()
    if raw not in MISSING_PROVIDER_POLICIES:
        raise AuthConfigError(
            f"Invalid AUTH_MISSING_PROVIDER_POLICY '{raw}' (expected one of: {', '.join(MISSING_PROVIDER_POLICIES)})"
        )
    return raw


def _parse_ttl(env: Mapping[str, str]) -> int:
    raw = _get(env, "AUTH_SESSION_TTL_SECONDS")
    if raw is None:
        return DEFAULT_SESSION_TTL_SECONDS
    try:
        ttl = int(float(raw))
    except ValueError:
        raise AuthConfigError(f"Invalid AUTH_SESSION_TTL_SECONDS '{raw}'") from None
    return max(ttl, 60)


def _parse_cookie_secure(env: Mapping[str, str], base_url: Optional[str]) -> bool:
    raw = (_get(env, "AUTH_COOKIE_SECURE") or "").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    # Default: secure cookies when the public origin is https; otherwise allow local dev.
    return (base_url or "").startswith("https://")


def _collect_social_providers(env: Mapping[str, str], policy: str) -> Dict[str, ProviderCredential]:
    requested = _parse_csv(env.get("AUTH_SOCIAL_PROVIDERS"))
    for name in requested:
        if name not in SOCIAL_PROVIDER_ENV:
            raise UnknownProviderError(name)

    providers: Dict[str, ProviderCredential] = {}
    for name, (id_key, secret_key) in SOCIAL_PROVIDER_ENV.items():
        client_id = _get_verbatim(env, id_key)
        client_secret = _get_verbatim(env, secret_key)

        # A provider is enabled by configuring any of its keys, or by asking for it explicitly.
        enabled = name in requested or client_id is not None or client_secret is not None
        if not enabled:
            continue

        missing = [k for k, v in ((id_key, client_id), (secret_key, client_secret)) if v is None]
        if missing:
            if policy == POLICY_DISABLE:
                logger.warning("Social provider %s disabled: missing %s", name, ", ".join(missing))
                continue
            raise MissingCredentialError(name, missing)

        providers[name] = ProviderCredential(client_id=client_id, client_secret=client_secret)  # type: ignore[arg-type]

    return providers


def build_auth_config(env: Mapping[str, str], db_handle: Any, *, policy: Optional[str] = None) -> AuthConfig:
    """
    Assemble a validated AuthConfig from an environment mapping and a live database handle.

    Email/password login is always enabled. Google/GitHub are enabled when any of their
    `*_CLIENT_ID` / `*_CLIENT_SECRET` keys is set (or the name is listed in
    AUTH_SOCIAL_PROVIDERS); an enabled provider missing a key raises
    MissingCredentialError unless the policy is "disable", which drops it instead.

    No network or disk I/O happens here; `db_handle` must already be connected.
    """
    database = db_handle if isinstance(db_handle, DatabaseAdapter) else postgres_adapter(db_handle)
    resolved_policy = _parse_policy(env, policy)
    social = _collect_social_providers(env, resolved_policy)

    base_url = _get(env, "AUTH_BASE_URL")
    if base_url:
        base_url = base_url.rstrip("/")

    return AuthConfig(
        database=database,
        credential_auth=True,
        social_providers=MappingProxyType(social),
        base_url=base_url,
        secret=_get(env, "AUTH_SECRET"),
        session_ttl_seconds=_parse_ttl(env),
        cookie_secure=_parse_cookie_secure(env, base_url),
        missing_provider_policy=resolved_policy,
    )


def load_auth_config(db_handle: Any, *, policy: Optional[str] = None) -> AuthConfig:
    """Build the AuthConfig from the process environment."""
    return build_auth_config(os.environ, db_handle, policy=policy)
