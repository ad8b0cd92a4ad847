from __future__ import annotations

import json
import time
from typing import Any, Dict
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from authkit.auth.config import ProviderCredential, build_auth_config
from authkit.auth.errors import OAuthExchangeError
from authkit.auth.social import GitHubProvider, GoogleProvider, build_providers, pkce_challenge

GOOGLE_DISCOVERY = {
    "issuer": "https://accounts.google.com",
    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_endpoint": "https://oauth2.googleapis.com/token",
    "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
}


def _response(status_code: int, body: Any) -> MagicMock:
    r = MagicMock()
    r.status_code = status_code
    r.json.return_value = body
    return r


@pytest.fixture
def rsa_key():  # type: ignore[no-untyped-def]
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def google_docs(rsa_key):  # type: ignore[no-untyped-def]
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk.update({"kid": "test-kid", "alg": "RS256", "use": "sig"})
    docs = {
        "https://accounts.google.com/.well-known/openid-configuration": GOOGLE_DISCOVERY,
        GOOGLE_DISCOVERY["jwks_uri"]: {"keys": [jwk]},
    }

    def fake_get_json_cached(_cache, url):  # type: ignore[no-untyped-def]
        return docs[url]

    with patch("authkit.auth.social._get_json_cached", side_effect=fake_get_json_cached):
        yield docs


def _id_token(key, **overrides) -> str:  # type: ignore[no-untyped-def]
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": "https://accounts.google.com",
        "aud": "google-client",
        "sub": "1234567890",
        "iat": now,
        "exp": now + 600,
        "nonce": "n-1",
        "email": "Ada@Example.com",
        "email_verified": True,
        "name": "Ada Lovelace",
        "picture": "https://example.com/ada.png",
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": "test-kid"})


def test_pkce_challenge_matches_rfc7636_example() -> None:
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFWEqIOgpJBcR4cGNm6a0ZrJVa3sOmhc"


def test_build_providers_only_for_enabled(fake_conn) -> None:
    cfg = build_auth_config({"GITHUB_CLIENT_ID": "a", "GITHUB_CLIENT_SECRET": "b"}, fake_conn)
    providers = build_providers(cfg)
    assert list(providers) == ["github"]
    assert isinstance(providers["github"], GitHubProvider)


def test_github_authorize_url() -> None:
    p = GitHubProvider(ProviderCredential("gh-client", "gh-secret"))
    url = p.authorize_url(
        redirect_uri="https://auth.example.com/api/auth/callback/github", state="st", code_verifier="v" * 43, nonce="n"
    )
    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://github.com/login/oauth/authorize"
    q = parse_qs(parsed.query)
    assert q["client_id"] == ["gh-client"]
    assert q["state"] == ["st"]
    assert q["scope"] == ["read:user user:email"]
    assert q["code_challenge_method"] == ["S256"]
    assert "client_secret" not in q
    assert "nonce" not in q


def test_google_authorize_url_includes_nonce(google_docs) -> None:
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    url = p.authorize_url(redirect_uri="https://x/cb", state="st", code_verifier="v" * 43, nonce="n-1")
    assert url.startswith(GOOGLE_DISCOVERY["authorization_endpoint"] + "?")
    q = parse_qs(urlparse(url).query)
    assert q["nonce"] == ["n-1"]
    assert q["scope"] == ["openid email profile"]


def test_token_exchange_error_payload_raises() -> None:
    p = GitHubProvider(ProviderCredential("gh-client", "gh-secret"))
    with patch("authkit.auth.social.requests.post", return_value=_response(200, {"error": "bad_verification_code"})):
        with pytest.raises(OAuthExchangeError) as exc:
            p.exchange_code(redirect_uri="https://x/cb", code="c", code_verifier="v")
    assert "bad_verification_code" in str(exc.value)


def test_token_exchange_http_error_raises() -> None:
    p = GitHubProvider(ProviderCredential("gh-client", "gh-secret"))
    with patch("authkit.auth.social.requests.post", return_value=_response(401, {})):
        with pytest.raises(OAuthExchangeError):
            p.exchange_code(redirect_uri="https://x/cb", code="c", code_verifier="v")


def test_github_profile_uses_primary_verified_email() -> None:
    p = GitHubProvider(ProviderCredential("gh-client", "gh-secret"))
    responses = {
        "https://api.github.com/user": _response(
            200, {"id": 42, "login": "octocat", "name": None, "email": None, "avatar_url": "https://a/x.png"}
        ),
        "https://api.github.com/user/emails": _response(
            200,
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "Octo@Example.com", "primary": True, "verified": True},
            ],
        ),
    }
    token_response = _response(200, {"access_token": "tok", "scope": "read:user"})
    with patch("authkit.auth.social.requests.post", return_value=token_response):
        with patch("authkit.auth.social.requests.get", side_effect=lambda url, **_kw: responses[url]):
            profile = p.complete(redirect_uri="https://x/cb", code="c", code_verifier="v", expected_nonce="unused")

    assert profile.provider_id == "github"
    assert profile.account_id == "42"
    assert profile.email == "octo@example.com"
    assert profile.email_verified is True
    assert profile.name == "octocat"
    assert profile.access_token == "tok"


def test_github_public_unverified_email() -> None:
    p = GitHubProvider(ProviderCredential("gh-client", "gh-secret"))
    responses = {
        "https://api.github.com/user": _response(200, {"id": 7, "login": "x", "email": "x@example.com"}),
        "https://api.github.com/user/emails": _response(
            200, [{"email": "x@example.com", "primary": True, "verified": False}]
        ),
    }
    with patch("authkit.auth.social.requests.get", side_effect=lambda url, **_kw: responses[url]):
        profile = p.fetch_profile({"access_token": "tok"}, expected_nonce="")
    assert profile.email == "x@example.com"
    assert profile.email_verified is False


def test_google_profile_from_valid_id_token(google_docs, rsa_key) -> None:
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    tokens = {"access_token": "at", "refresh_token": "rt", "id_token": _id_token(rsa_key)}
    profile = p.fetch_profile(tokens, expected_nonce="n-1")
    assert profile.provider_id == "google"
    assert profile.account_id == "1234567890"
    assert profile.email == "ada@example.com"
    assert profile.email_verified is True
    assert profile.name == "Ada Lovelace"
    assert profile.refresh_token == "rt"


def test_google_nonce_mismatch(google_docs, rsa_key) -> None:
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    with pytest.raises(OAuthExchangeError, match="nonce"):
        p.fetch_profile({"access_token": "at", "id_token": _id_token(rsa_key)}, expected_nonce="other")


def test_google_wrong_audience(google_docs, rsa_key) -> None:
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    with pytest.raises(OAuthExchangeError):
        tokens = {"access_token": "at", "id_token": _id_token(rsa_key, aud="someone-else")}
        p.fetch_profile(tokens, expected_nonce="n-1")


def test_google_foreign_signing_key(google_docs) -> None:
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    with pytest.raises(OAuthExchangeError):
        p.fetch_profile({"access_token": "at", "id_token": _id_token(other, aud="google-client")}, expected_nonce="n-1")


def test_google_missing_id_token(google_docs) -> None:
    p = GoogleProvider(ProviderCredential("google-client", "google-secret"))
    with pytest.raises(OAuthExchangeError):
        p.fetch_profile({"access_token": "at"}, expected_nonce="n-1")
