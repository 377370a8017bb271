# Overview: TOTP second factor, salted backup codes, and the per-user MFA attempt limiter.

from __future__ import annotations

import hashlib
import hmac
import secrets

import pyotp

from ..extensions import db
from ..models import AdminUser
from .concurrency import lock_for_update
from .rate_limit_service import MemoryRateLimitStore


BACKUP_CODE_COUNT = 10
LOW_BACKUP_CODE_WARNING = 3
MFA_MAX_ATTEMPTS = 5
TOTP_VALID_WINDOW = 1  # one 30 second step either side

# In-process; approximate across workers
mfa_limiter = MemoryRateLimitStore()


def limiter_key(user_id) -> str:
    return f"mfa:{user_id}"


def generate_secret() -> str:
    # 32 base32 characters encode 20 bytes
    return pyotp.random_base32(length=32)


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(secret: str | None, code) -> bool:
    if not secret or code is None:
        return False
    code = str(code).strip().replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=TOTP_VALID_WINDOW)


def hash_backup_code(code: str, salt: str) -> str:
    return hashlib.sha256((code.strip().upper() + salt).encode("utf-8")).hexdigest()


def generate_backup_codes() -> tuple[list[str], str, list[str]]:
    """Returns (plaintext codes, salt, hashed codes). Plaintext is shown once."""
    codes = [secrets.token_hex(4).upper() for _ in range(BACKUP_CODE_COUNT)]
    salt = secrets.token_hex(16)
    return codes, salt, [hash_backup_code(code, salt) for code in codes]


def begin_setup(user: AdminUser) -> str:
    """Store a fresh, not-yet-enabled secret."""
    secret = generate_secret()
    user.mfa_secret = secret
    user.mfa_enabled = False
    db.session.commit()
    return secret


def enable(user: AdminUser) -> list[str]:
    """Turn MFA on and replace backup codes; returns the plaintext codes."""
    codes, salt, hashed = generate_backup_codes()
    user.mfa_enabled = True
    user.mfa_backup_codes = hashed
    user.mfa_backup_salt = salt
    db.session.commit()
    return codes


def regenerate_backup_codes(user: AdminUser) -> list[str]:
    codes, salt, hashed = generate_backup_codes()
    user.mfa_backup_codes = hashed
    user.mfa_backup_salt = salt
    db.session.commit()
    return codes


def redeem_backup_code(user_id: int, code: str) -> int | None:
    """
    Consume one backup code.

    Returns the number of codes left, or None when the code does not match.
    The row is locked so a code cannot be spent twice.
    """
    user = lock_for_update(db.session.query(AdminUser).filter_by(id=user_id)).first()
    if user is None or not user.mfa_backup_codes:
        db.session.rollback()
        return None

    candidate = hash_backup_code(code, user.mfa_backup_salt or "")
    remaining = list(user.mfa_backup_codes)
    match = next((i for i, stored in enumerate(remaining) if hmac.compare_digest(stored, candidate)), None)
    if match is None:
        db.session.rollback()
        return None

    del remaining[match]
    user.mfa_backup_codes = remaining
    db.session.commit()
    return len(remaining)
