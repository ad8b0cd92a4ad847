"""
Authentication engine.

`init_auth_engine(config)` turns a validated AuthConfig into an AuthHandler: a FastAPI
router exposing email/password and social login, plus the request authenticator used
by the HTTP layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from authkit.auth.config import AuthConfig
from authkit.auth.errors import OAuthExchangeError
from authkit.auth.local import SignUpError, authenticate_email, sign_up_email
from authkit.auth.models import AuthUser, Session, SocialProfile, User
from authkit.auth.rate_limit import RateLimiter
from authkit.auth.session import SessionManager
from authkit.auth.social import SocialProvider, build_providers
from authkit.auth.store import AuthStore
from authkit.auth.util import normalize_email, random_token, sanitize_next_path

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/api/auth"
_OAUTH_TTL_SECONDS = 10 * 60
_OAUTH_COOKIES = ("authkit_oauth_state", "authkit_oauth_verifier", "authkit_oauth_nonce", "authkit_oauth_next")


def _user_json(user: User | AuthUser) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "image": user.image,
        "emailVerified": user.email_verified,
    }


def _session_json(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "userId": session.user_id,
        "expiresAt": session.expires_at.isoformat(),
    }


@dataclass
class AuthHandler:
    """Mountable authentication routes bound to one AuthConfig."""

    config: AuthConfig
    store: AuthStore
    sessions: SessionManager
    providers: Dict[str, SocialProvider]
    prefix: str = DEFAULT_PREFIX
    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    router: APIRouter = field(init=False)

    def __post_init__(self) -> None:
        self.router = _build_router(self)

    def current_session(self, request: Request) -> Optional[Tuple[Session, User]]:
        return self.sessions.resolve(request.cookies.get(self.sessions.cookie_name))

    def authenticate(self, request: Request) -> Optional[AuthUser]:
        """Return the signed-in user for this request, or None."""
        found = self.current_session(request)
        if found is None:
            return None
        return found[1].to_auth_user()

    def redirect_uri(self, provider: str) -> str:
        base = (self.config.base_url or "").rstrip("/")
        if not base:
            raise HTTPException(status_code=500, detail="AUTH_BASE_URL is required for social login")
        return f"{base}{self.prefix}/callback/{provider}"

    def oauth_cookie_kwargs(self, *, key: str, value: str, max_age: int) -> dict:
        return {
            "key": key,
            "value": value,
            "max_age": max_age,
            "httponly": True,
            "secure": self.config.cookie_secure,
            "samesite": "lax",
            "path": self.prefix or "/",
        }

    def start_session(self, response, request: Request, user: User) -> Session:  # type: ignore[no-untyped-def]
        session, cookie_value = self.sessions.create(
            user,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        response.set_cookie(**self.sessions.cookie_kwargs(cookie_value))
        return session

    def resolve_social_user(self, profile: SocialProfile) -> User:
        """
        Find or create the user for a social profile.

        Lookup order: linked account, then existing user with the same email (linked only when
        the provider vouches for the address), then a new user.
        """
        tokens = {
            "access_token": profile.access_token,
            "refresh_token": profile.refresh_token,
            "id_token": profile.id_token,
            "scope": profile.scope,
        }
        account = self.store.get_account(profile.provider_id, profile.account_id)
        if account is not None:
            self.store.update_account_tokens(account.id, **tokens)
            user = self.store.get_user_by_id(account.user_id)
            if user is None:
                raise HTTPException(status_code=500, detail="Linked account has no user")
            return user

        if not profile.email:
            raise HTTPException(status_code=400, detail=f"No email address available from {profile.provider_id}")

        existing = self.store.get_user_by_email(profile.email)
        if existing is not None:
            if not profile.email_verified:
                raise HTTPException(status_code=403, detail="Email not verified by provider; cannot link account")
            self.store.link_account(
                user_id=existing.id, provider_id=profile.provider_id, account_id=profile.account_id, **tokens
            )
            logger.info("Linked %s account to user %s", profile.provider_id, existing.id)
            return existing

        user = self.store.create_social_user(
            email=profile.email,
            name=profile.name,
            image=profile.image,
            email_verified=profile.email_verified,
            provider_id=profile.provider_id,
            account_id=profile.account_id,
            **tokens,
        )
        logger.info("Registered user %s via %s", user.id, profile.provider_id)
        return user


def _build_router(handler: AuthHandler) -> APIRouter:
    cfg = handler.config
    router = APIRouter(prefix=handler.prefix, tags=["auth"])

    @router.get("/ok")
    def auth_ok() -> Dict[str, Any]:
        return {"ok": True}

    @router.get("/providers")
    def auth_providers() -> Dict[str, Any]:
        """
        Expose the enabled login methods so a UI can render the right options.
        This endpoint is intentionally public; it returns no secrets.
        """
        return {
            "ok": True,
            "emailAndPassword": cfg.credential_auth,
            "socialProviders": cfg.enabled_providers,
        }

    @router.post("/sign-up/email")
    def sign_up(request: Request, body: Dict[str, Any]) -> JSONResponse:
        if not cfg.credential_auth:
            raise HTTPException(status_code=403, detail="Email/password auth is not enabled")
        email = str(body.get("email") or "").strip()
        password = str(body.get("password") or "")
        name = str(body.get("name") or "").strip() or None
        if not email or not password:
            raise HTTPException(status_code=400, detail="Missing email or password")

        try:
            user = sign_up_email(handler.store, cfg, email=email, password=password, name=name)
        except SignUpError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))

        resp = JSONResponse(content={"ok": True, "user": _user_json(user)})
        resp.headers["Cache-Control"] = "no-store"
        handler.start_session(resp, request, user)
        return resp

    @router.post("/sign-in/email")
    def sign_in(request: Request, body: Dict[str, Any]) -> JSONResponse:
        """
        Email/password sign-in.
        Rate-limited per email to slow down brute force attempts.
        """
        if not cfg.credential_auth:
            raise HTTPException(status_code=403, detail="Email/password auth is not enabled")
        email = normalize_email(str(body.get("email") or ""))
        password = str(body.get("password") or "")
        if not email or not password:
            raise HTTPException(status_code=400, detail="Missing email or password")

        allowed, remaining = handler.rate_limiter.check_and_increment(email)
        if not allowed:
            raise HTTPException(status_code=429, detail="Too many failed sign-in attempts. Please try again later.")

        auth_user = authenticate_email(handler.store, email, password)
        if auth_user is None:
            raise HTTPException(status_code=401, detail=f"Invalid email or password ({remaining} attempts remaining)")
        handler.rate_limiter.reset(email)

        user = handler.store.get_user_by_id(auth_user.id)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid email or password")

        resp = JSONResponse(content={"ok": True, "user": _user_json(user)})
        resp.headers["Cache-Control"] = "no-store"
        handler.start_session(resp, request, user)
        return resp

    @router.post("/sign-in/social")
    def sign_in_social(body: Dict[str, Any]) -> JSONResponse:
        """Start the OAuth authorization-code flow; the client follows the returned URL."""
        name = str(body.get("provider") or "").strip().lower()
        provider = handler.providers.get(name)
        if provider is None:
            raise HTTPException(status_code=404, detail=f"Social provider '{name}' is not enabled")

        redirect_uri = handler.redirect_uri(name)
        state = random_token(32)
        nonce = random_token(32)
        verifier = random_token(32)  # 43+ chars (base64url) -> valid PKCE verifier
        safe_next = sanitize_next_path(body.get("callbackURL"))

        try:
            url = provider.authorize_url(redirect_uri=redirect_uri, state=state, code_verifier=verifier, nonce=nonce)
        except OAuthExchangeError as e:
            logger.warning("Failed to build %s authorization URL: %s", name, str(e))
            raise HTTPException(status_code=502, detail=f"{name} is unavailable")

        resp = JSONResponse(content={"url": url, "redirect": True})
        resp.headers["Cache-Control"] = "no-store"
        for key, value in zip(_OAUTH_COOKIES, (state, verifier, nonce, safe_next)):
            resp.set_cookie(**handler.oauth_cookie_kwargs(key=key, value=value, max_age=_OAUTH_TTL_SECONDS))
        return resp

    @router.get("/callback/{provider_name}")
    def social_callback(
        request: Request,
        provider_name: str,
        code: str = Query(...),
        state: str = Query(...),
    ) -> RedirectResponse:
        """Handle the provider redirect: verify state, exchange the code, sign the user in."""
        provider = handler.providers.get(provider_name)
        if provider is None:
            raise HTTPException(status_code=404, detail=f"Social provider '{provider_name}' is not enabled")

        cookie_state = (request.cookies.get("authkit_oauth_state") or "").strip()
        cookie_verifier = (request.cookies.get("authkit_oauth_verifier") or "").strip()
        cookie_nonce = (request.cookies.get("authkit_oauth_nonce") or "").strip()
        cookie_next = sanitize_next_path(request.cookies.get("authkit_oauth_next"))

        if not cookie_state or cookie_state != (state or "").strip():
            raise HTTPException(status_code=400, detail="Invalid OAuth state")
        if not cookie_verifier or not cookie_nonce:
            raise HTTPException(status_code=400, detail="Missing OAuth verifier/nonce")

        try:
            profile = provider.complete(
                redirect_uri=handler.redirect_uri(provider_name),
                code=code,
                code_verifier=cookie_verifier,
                expected_nonce=cookie_nonce,
            )
        except OAuthExchangeError as e:
            logger.warning("Social sign-in failed: %s", str(e))
            raise HTTPException(status_code=400, detail="Social sign-in failed")

        user = handler.resolve_social_user(profile)

        resp = RedirectResponse(url=cookie_next, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        handler.start_session(resp, request, user)
        for key in _OAUTH_COOKIES:
            resp.set_cookie(**handler.oauth_cookie_kwargs(key=key, value="", max_age=0))
        return resp

    @router.get("/get-session")
    def get_session(request: Request) -> Dict[str, Any]:
        found = handler.current_session(request)
        if found is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        session, user = found
        return {"ok": True, "session": _session_json(session), "user": _user_json(user)}

    @router.post("/sign-out")
    def sign_out(request: Request) -> JSONResponse:
        handler.sessions.revoke(request.cookies.get(handler.sessions.cookie_name))
        resp = JSONResponse(content={"ok": True})
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**handler.sessions.clear_cookie_kwargs())
        return resp

    return router


def init_auth_engine(config: AuthConfig, *, prefix: str = DEFAULT_PREFIX) -> AuthHandler:
    """
    Build the AuthHandler for a validated config.

    Without AUTH_SECRET, sessions are signed with a random per-process secret and
    do not survive a restart.
    """
    secret = config.secret
    if not secret:
        logger.warning("AUTH_SECRET is not set; using an ephemeral session secret")
        secret = random_token(32)

    store = AuthStore(config.database)
    handler = AuthHandler(
        config=config,
        store=store,
        sessions=SessionManager(config, store, secret),
        providers=build_providers(config),
        prefix=("/" + prefix.strip("/")) if prefix.strip("/") else "",
    )
    logger.info(
        "Auth engine ready: emailAndPassword=%s socialProviders=%s",
        config.credential_auth,
        ",".join(config.enabled_providers) or "none",
    )
    return handler
