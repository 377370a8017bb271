# Overview: Service-layer operations for admin sessions; issuance, refresh rotation, and revocation.

"""
Admin session lifecycle on top of the token kernel.

Refresh tokens are single-use. Rotation records the presented `jti` in
revoked_tokens before issuing a new pair; the unique constraint on `jti`
means a second presentation of the same token fails with a replay error
even when two requests race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AdminUser, RevokedToken
from ..time_utils import utcnow
from . import token_service
from .token_service import IssuedSession


logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Refresh or logout could not proceed; maps to 401."""


class RefreshReplayError(SessionError):
    """A refresh token was presented after it had already been rotated."""


@dataclass
class RotatedSession:
    user: AdminUser
    session: IssuedSession


def _expiry(payload: dict) -> datetime:
    exp = payload.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, timezone.utc).replace(tzinfo=None)
    return utcnow() + token_service.REFRESH_TOKEN_TTL


def revoke(payload: dict) -> bool:
    """
    Record a refresh token's jti as spent.

    Returns False when it was already revoked.
    """
    db.session.add(
        RevokedToken(
            jti=payload["jti"],
            user_id=payload.get("userId"),
            expires_at=_expiry(payload),
            revoked_at=utcnow(),
        )
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def issue(user: AdminUser) -> IssuedSession:
    return token_service.issue_session(user)


def rotate(refresh_token: str | None) -> RotatedSession:
    """Verify a refresh token, spend it, and issue a fresh token trio."""
    result = token_service.verify_refresh_token(refresh_token)
    if not result.valid:
        raise SessionError(result.error or "Invalid refresh token")

    payload = result.payload
    if not revoke(payload):
        logger.warning("Refresh token replay detected for user %s", payload.get("userId"))
        raise RefreshReplayError("Refresh token already used")

    user = db.session.get(AdminUser, payload.get("userId"))
    if user is None or not user.is_active:
        raise SessionError("User not found or inactive")

    return RotatedSession(user=user, session=token_service.issue_session(user))


def logout(refresh_token: str | None) -> None:
    """Spend the presented refresh token, if it is still valid."""
    result = token_service.verify_refresh_token(refresh_token)
    if result.valid:
        revoke(result.payload)


def cleanup_expired() -> int:
    deleted = (
        db.session.query(RevokedToken)
        .filter(RevokedToken.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
