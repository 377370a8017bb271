# Overview: Signed session tokens, cookie transport, and CSRF double-submit checks for admin sessions.

"""
Token kernel for administrator sessions.

Three cooperating tokens:
- access token (15 minutes), cookie `fs_access_token`, HttpOnly, Path=/
- refresh token (7 days) carrying a random `jti`, cookie `fs_refresh_token`,
  HttpOnly, Path=/api
- CSRF token (256 random bits), cookie `fs_csrf_token`, readable by scripts
  and mirrored by clients into the `X-CSRF-Token` header

Verification never raises for bad input; it returns a TokenResult. A missing
JWT_SECRET is a deployment fault and raises TokenConfigError so the route can
answer 500.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

import jwt
from flask import current_app

from ..config import cookies_secure
from ..time_utils import utcnow


ALGORITHM = "HS256"

ACCESS_COOKIE = "fs_access_token"
REFRESH_COOKIE = "fs_refresh_token"
CSRF_COOKIE = "fs_csrf_token"
CSRF_HEADER = "X-CSRF-Token"

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)
PRE_MFA_TOKEN_TTL = timedelta(minutes=5)
SETUP_TOKEN_TTL = timedelta(minutes=10)
PARTIAL_SETUP_TOKEN_TTL = timedelta(minutes=30)

STATE_CHANGING_METHODS = {"POST", "PUT", "DELETE", "PATCH"}


class TokenConfigError(RuntimeError):
    """JWT_SECRET is not configured."""


@dataclass(frozen=True)
class TokenResult:
    valid: bool
    payload: dict = field(default_factory=dict)
    error: str | None = None
    expired: bool = False


@dataclass(frozen=True)
class IssuedSession:
    access_token: str
    refresh_token: str
    csrf_token: str
    jti: str


def _secret() -> str:
    secret = current_app.config.get("JWT_SECRET")
    if not secret:
        current_app.logger.error("JWT_SECRET is not configured")
        raise TokenConfigError("Server configuration error")
    return secret


def is_configured() -> bool:
    return bool(current_app.config.get("JWT_SECRET"))


def _sign(claims: dict, ttl: timedelta) -> str:
    now = utcnow()
    payload = dict(claims)
    payload["iat"] = now
    payload["exp"] = now + ttl
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def decode_token(token: str | None) -> TokenResult:
    if not token:
        return TokenResult(False, error="No token provided")
    secret = _secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return TokenResult(False, error="Token expired", expired=True)
    except jwt.InvalidTokenError:
        return TokenResult(False, error="Invalid token")
    return TokenResult(True, payload=payload)


# =============================================================================
# ISSUANCE
# =============================================================================

def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def create_access_token(user) -> str:
    return _sign(
        {
            "userId": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "type": "access",
            "mfaVerified": True,
        },
        ACCESS_TOKEN_TTL,
    )


def create_refresh_token(user) -> tuple[str, str]:
    jti = secrets.token_hex(16)
    token = _sign(
        {"userId": user.id, "email": user.email, "type": "refresh", "jti": jti},
        REFRESH_TOKEN_TTL,
    )
    return token, jti


def create_pre_mfa_token(user) -> str:
    return _sign({"userId": user.id, "email": user.email, "preMfa": True}, PRE_MFA_TOKEN_TTL)


def create_setup_token(user, partial: bool = False) -> str:
    claims = {
        "userId": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "mfaSetupRequired": True,
    }
    if partial:
        claims["mfaPartialSetup"] = True
    return _sign(claims, PARTIAL_SETUP_TOKEN_TTL if partial else SETUP_TOKEN_TTL)


def issue_session(user) -> IssuedSession:
    refresh_token, jti = create_refresh_token(user)
    return IssuedSession(
        access_token=create_access_token(user),
        refresh_token=refresh_token,
        csrf_token=generate_csrf_token(),
        jti=jti,
    )


# =============================================================================
# VERIFICATION
# =============================================================================

def verify_access_token(token: str | None) -> TokenResult:
    result = decode_token(token)
    if not result.valid:
        return result
    if result.payload.get("type") != "access":
        return TokenResult(False, error="Invalid token type")
    return result


def verify_refresh_token(token: str | None) -> TokenResult:
    result = decode_token(token)
    if not result.valid:
        if result.expired:
            return result
        return TokenResult(False, error="Invalid refresh token")
    if result.payload.get("type") != "refresh" or not result.payload.get("jti"):
        return TokenResult(False, error="Invalid token type")
    return result


def verify_pre_mfa_token(token: str | None) -> TokenResult:
    result = decode_token(token)
    if not result.valid:
        return result
    if result.payload.get("preMfa") is not True:
        return TokenResult(False, error="Invalid token type")
    return result


def verify_setup_token(token: str | None) -> TokenResult:
    result = decode_token(token)
    if not result.valid:
        return result
    if result.payload.get("mfaSetupRequired") is not True:
        return TokenResult(False, error="Invalid token type")
    return result


def csrf_matches(req) -> bool:
    header = req.headers.get(CSRF_HEADER)
    cookie = req.cookies.get(CSRF_COOKIE)
    if not header or not cookie:
        return False
    return hmac.compare_digest(header, cookie)


def bearer_token(req) -> str | None:
    auth_header = req.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def verify_request(req) -> TokenResult:
    """
    Hybrid admission: a Bearer header, else the cookie trio.

    In cookie mode every state-changing method must also pass the CSRF
    double-submit check.
    """
    token = bearer_token(req)
    if token:
        return verify_access_token(token)

    token = req.cookies.get(ACCESS_COOKIE)
    if not token:
        return TokenResult(False, error="No access token")

    if req.method in STATE_CHANGING_METHODS and not csrf_matches(req):
        return TokenResult(False, error="CSRF validation failed")

    return verify_access_token(token)


# =============================================================================
# COOKIES
# =============================================================================

def set_session_cookies(response, session: IssuedSession):
    secure = cookies_secure(current_app.config)
    response.set_cookie(
        ACCESS_COOKIE,
        session.access_token,
        max_age=int(ACCESS_TOKEN_TTL.total_seconds()),
        path="/",
        httponly=True,
        secure=secure,
        samesite="Strict",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        session.refresh_token,
        max_age=int(REFRESH_TOKEN_TTL.total_seconds()),
        path="/api",
        httponly=True,
        secure=secure,
        samesite="Strict",
    )
    response.set_cookie(
        CSRF_COOKIE,
        session.csrf_token,
        max_age=int(REFRESH_TOKEN_TTL.total_seconds()),
        path="/",
        httponly=False,
        secure=secure,
        samesite="Strict",
    )
    return response


def clear_session_cookies(response):
    for name, path, httponly in (
        (ACCESS_COOKIE, "/", True),
        (REFRESH_COOKIE, "/api", True),
        (CSRF_COOKIE, "/", False),
    ):
        response.set_cookie(name, "", max_age=0, path=path, httponly=httponly, samesite="Strict")
    return response
