from __future__ import annotations

import base64
import os
import uuid


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def sanitize_next_path(next_path: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/dashboard`.
    """
    p = (next_path or "").strip()
    if not p:
        return "/"
    if not p.startswith("/"):
        return "/"
    # Disallow scheme-relative: `//evil.com`
    if p.startswith("//"):
        return "/"
    # Keep it simple: strip any CR/LF.
    p = p.replace("\r", "").replace("\n", "")
    return p or "/"
