from __future__ import annotations

from typing import Sequence


class AuthError(Exception):
    """Base class for authkit errors."""


class AuthConfigError(AuthError):
    """The authentication configuration is invalid. Fatal at startup."""


class MissingCredentialError(AuthConfigError):
    """A required client id/secret is absent for an enabled social provider."""

    def __init__(self, provider: str, missing_keys: Sequence[str]):
        self.provider = provider
        self.missing_keys = tuple(missing_keys)
        super().__init__(f"Social provider '{provider}' is enabled but missing {', '.join(self.missing_keys)}")


class UnknownProviderError(AuthConfigError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown social provider '{provider}'")


class UnsupportedDialectError(AuthConfigError):
    def __init__(self, dialect: str):
        self.dialect = dialect
        super().__init__(f"Unsupported database dialect '{dialect}' (supported: postgresql)")


class DatabaseUnavailableError(AuthError):
    """The supplied database handle cannot reach the database."""


class OAuthExchangeError(AuthError):
    """A social provider rejected or mangled an authorization-code exchange."""
