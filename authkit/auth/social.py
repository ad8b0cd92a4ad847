from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from authkit.auth.config import AuthConfig, ProviderCredential
from authkit.auth.errors import OAuthExchangeError
from authkit.auth.models import SocialProfile
from authkit.auth.util import b64url, normalize_email

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

_discovery_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def _get_json_cached(cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]], url: str) -> Dict[str, Any]:
    """Fetch a JSON document, cached for 1 hour per URL."""
    ts, cached = cache.get(url, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < 3600:
        return cached
    try:
        r = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        raise OAuthExchangeError(f"Failed to fetch {url}: {e}") from e
    if not isinstance(data, dict):
        raise OAuthExchangeError(f"Invalid JSON document at {url}")
    cache[url] = (now, data)
    return data


class SocialProvider:
    """
    OAuth2 authorization-code client for one provider.

    Subclasses fill in the endpoints and turn the token response into a SocialProfile.
    """

    name = ""
    scopes: List[str] = []

    def __init__(self, credential: ProviderCredential):
        self.credential = credential

    def authorization_endpoint(self) -> str:
        raise NotImplementedError

    def token_endpoint(self) -> str:
        raise NotImplementedError

    def authorization_params(self, *, nonce: str) -> Dict[str, str]:
        return {}

    def authorize_url(self, *, redirect_uri: str, state: str, code_verifier: str, nonce: str) -> str:
        params = {
            "client_id": self.credential.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": pkce_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        params.update(self.authorization_params(nonce=nonce))
        return f"{self.authorization_endpoint()}?{urlencode(params)}"

    def exchange_code(self, *, redirect_uri: str, code: str, code_verifier: str) -> Dict[str, Any]:
        """
        Exchange authorization code for tokens.
        """
        payload = {
            "client_id": self.credential.client_id,
            "client_secret": self.credential.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        try:
            r = requests.post(
                self.token_endpoint(),
                data=payload,
                headers={"Accept": "application/json"},
                timeout=HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise OAuthExchangeError(f"{self.name}: token request failed: {e}") from e
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise OAuthExchangeError(f"{self.name}: token exchange failed (status={r.status_code})")
        try:
            data = r.json()
        except ValueError:
            raise OAuthExchangeError(f"{self.name}: invalid token response") from None
        if not isinstance(data, dict):
            raise OAuthExchangeError(f"{self.name}: invalid token response")
        # GitHub reports failures as 200 + {"error": ...}.
        if data.get("error"):
            raise OAuthExchangeError(f"{self.name}: token exchange failed ({data.get('error')})")
        if not data.get("access_token"):
            raise OAuthExchangeError(f"{self.name}: token response missing access_token")
        return data

    def fetch_profile(self, tokens: Dict[str, Any], *, expected_nonce: str) -> SocialProfile:
        raise NotImplementedError

    def complete(self, *, redirect_uri: str, code: str, code_verifier: str, expected_nonce: str) -> SocialProfile:
        tokens = self.exchange_code(redirect_uri=redirect_uri, code=code, code_verifier=code_verifier)
        return self.fetch_profile(tokens, expected_nonce=expected_nonce)


class GoogleProvider(SocialProvider):
    name = "google"
    scopes = ["openid", "email", "profile"]

    def _discovery(self) -> Dict[str, Any]:
        return _get_json_cached(_discovery_cache, GOOGLE_DISCOVERY_URL)

    def authorization_endpoint(self) -> str:
        endpoint = str(self._discovery().get("authorization_endpoint") or "")
        if not endpoint:
            raise OAuthExchangeError("google: discovery missing authorization_endpoint")
        return endpoint

    def token_endpoint(self) -> str:
        endpoint = str(self._discovery().get("token_endpoint") or "")
        if not endpoint:
            raise OAuthExchangeError("google: discovery missing token_endpoint")
        return endpoint

    def authorization_params(self, *, nonce: str) -> Dict[str, str]:
        return {"nonce": nonce, "access_type": "offline", "prompt": "select_account"}

    def validate_id_token(self, id_token: str, *, expected_nonce: str) -> Dict[str, Any]:
        """
        Validate a Google ID token.
        - Verifies JWT signature using Google's published keys
        - Validates issuer, audience, nonce
        """
        disc = self._discovery()
        issuer = str(disc.get("issuer") or "")
        jwks_uri = str(disc.get("jwks_uri") or "")
        if not issuer or not jwks_uri:
            raise OAuthExchangeError("google: discovery missing issuer/jwks_uri")

        try:
            hdr = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as e:
            raise OAuthExchangeError(f"google: malformed ID token: {e}") from e
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise OAuthExchangeError("google: ID token missing kid")

        keys = _get_json_cached(_jwks_cache, jwks_uri).get("keys")
        if not isinstance(keys, list):
            raise OAuthExchangeError("google: invalid JWKS keys")
        jwk = next((k for k in keys if isinstance(k, dict) and str(k.get("kid") or "") == kid), None)
        if jwk is None:
            raise OAuthExchangeError("google: unknown signing key (kid)")

        key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
        try:
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=["RS256"],
                audience=self.credential.client_id,
                issuer=issuer,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as e:
            raise OAuthExchangeError(f"google: invalid ID token: {e}") from e

        nonce = str(claims.get("nonce") or "")
        if not nonce or nonce != expected_nonce:
            raise OAuthExchangeError("google: nonce mismatch")
        return claims

    def fetch_profile(self, tokens: Dict[str, Any], *, expected_nonce: str) -> SocialProfile:
        id_token = str(tokens.get("id_token") or "").strip()
        if not id_token:
            raise OAuthExchangeError("google: missing id_token in token response")
        claims = self.validate_id_token(id_token, expected_nonce=expected_nonce)
        return SocialProfile(
            provider_id=self.name,
            account_id=str(claims["sub"]),
            email=normalize_email(claims.get("email")) or None,
            name=str(claims.get("name") or "").strip() or None,
            image=str(claims.get("picture") or "").strip() or None,
            email_verified=claims.get("email_verified") is True,
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            id_token=id_token,
            scope=tokens.get("scope"),
        )


class GitHubProvider(SocialProvider):
    name = "github"
    scopes = ["read:user", "user:email"]

    def authorization_endpoint(self) -> str:
        return GITHUB_AUTHORIZE_URL

    def token_endpoint(self) -> str:
        return GITHUB_TOKEN_URL

    def _api_get(self, path: str, access_token: str) -> Any:
        try:
            r = requests.get(
                f"{GITHUB_API_URL}{path}",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/vnd.github+json"},
                timeout=HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise OAuthExchangeError(f"github: GET {path} failed: {e}") from e
        if r.status_code >= 400:
            raise OAuthExchangeError(f"github: GET {path} failed (status={r.status_code})")
        try:
            return r.json()
        except ValueError:
            raise OAuthExchangeError(f"github: invalid JSON from {path}") from None

    def fetch_profile(self, tokens: Dict[str, Any], *, expected_nonce: str) -> SocialProfile:
        access_token = str(tokens["access_token"])
        user = self._api_get("/user", access_token)
        if not isinstance(user, dict) or user.get("id") is None:
            raise OAuthExchangeError("github: invalid user response")

        email = normalize_email(user.get("email")) or None
        email_verified = False
        emails = self._api_get("/user/emails", access_token)
        if isinstance(emails, list):
            entries = [e for e in emails if isinstance(e, dict) and e.get("email")]
            if email is None:
                primary = next((e for e in entries if e.get("primary") and e.get("verified")), None)
                if primary is not None:
                    email = normalize_email(primary["email"])
            email_verified = any(normalize_email(e["email"]) == email and e.get("verified") is True for e in entries)

        return SocialProfile(
            provider_id=self.name,
            account_id=str(user["id"]),
            email=email,
            name=str(user.get("name") or user.get("login") or "").strip() or None,
            image=str(user.get("avatar_url") or "").strip() or None,
            email_verified=email_verified,
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            scope=tokens.get("scope"),
        )


PROVIDER_CLASSES = {
    "google": GoogleProvider,
    "github": GitHubProvider,
}


def build_providers(cfg: AuthConfig) -> Dict[str, SocialProvider]:
    """Instantiate a client for every social provider enabled in the config."""
    return {name: PROVIDER_CLASSES[name](cred) for name, cred in cfg.social_providers.items()}
