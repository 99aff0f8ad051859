# edgeproxy/core/security.py

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional

from fastapi import HTTPException, Request, Response, status

from edgeproxy.core.config import Settings

SESSION_TTL_SECONDS = 12 * 3600
NONCE_BYTES = 16
COOKIE_PATH = "/admin"


def b64url(raw: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def sign(secret: str, payload: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return b64url(digest)


def constant_time_equals(left: str, right: str) -> bool:
    """Compare without an early exit on the first differing byte."""
    a = left.encode("utf-8")
    b = right.encode("utf-8")
    if len(a) != len(b):
        return False
    diff = 0
    for x, y in zip(a, b):
        diff |= x ^ y
    return diff == 0


def issue_session_token(secret: str, now: Optional[int] = None, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    """Creates ``expiry.nonce.signature`` for the admin cookie."""
    issued_at = int(time.time()) if now is None else int(now)
    payload = f"{issued_at + ttl_seconds}.{b64url(secrets.token_bytes(NONCE_BYTES))}"
    return f"{payload}.{sign(secret, payload)}"


def verify_session_token(token: str, secret: str, now: Optional[int] = None) -> bool:
    """Checks shape, expiry and signature of an admin session token."""
    if not token or not secret:
        return False

    parts = token.split(".")
    if len(parts) != 3:
        return False

    expiry_raw, nonce, signature = parts
    try:
        expiry = int(expiry_raw)
    except ValueError:
        return False

    current = int(time.time()) if now is None else int(now)
    if expiry < current:
        return False

    return constant_time_equals(signature, sign(secret, f"{expiry_raw}.{nonce}"))


def check_admin_password(candidate: str, expected: str) -> bool:
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def set_session_cookie(response: Response, token: str, app_settings: Settings) -> None:
    response.set_cookie(
        key=app_settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=app_settings.SESSION_TTL_SECONDS,
        path=COOKIE_PATH,
        httponly=True,
        secure=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, app_settings: Settings) -> None:
    response.delete_cookie(
        key=app_settings.SESSION_COOKIE_NAME,
        path=COOKIE_PATH,
        httponly=True,
        secure=True,
        samesite="lax",
    )


def is_admin_request(request: Request) -> bool:
    app_settings: Settings = request.app.state.settings
    secret = app_settings.session_secret
    token = request.cookies.get(app_settings.SESSION_COOKIE_NAME, "")
    return bool(secret) and verify_session_token(token, secret)


def require_admin_password_configured(request: Request) -> str:
    """Dependency: the admin surface is unusable without ADMIN_PASSWORD."""
    admin_password = request.app.state.settings.ADMIN_PASSWORD
    if not admin_password:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_PASSWORD is not set",
        )
    return admin_password


async def get_current_admin(request: Request) -> bool:
    """Dependency to ensure the request carries a valid admin session."""
    require_admin_password_configured(request)
    if not is_admin_request(request):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin session required",
        )
    return True
