# Overview: Service-layer operations for admin auth; password hashing, legacy upgrade, and account lookup.

"""
Administrator authentication.

Passwords are bcrypt (cost 12). Rows migrated from the previous system may
still hold a legacy hex digest of SHA-256(password || JWT_SECRET); those
verify through the legacy branch and are re-hashed with bcrypt on the same
login.
"""

import hashlib
import hmac
import logging
import re

import bcrypt
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AdminUser
from ..permissions import ADMIN_ROLES
from ..time_utils import utcnow
from ..validation import validate_email


logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 12 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 12:
        raise PasswordValidationError("Password must be at least 12 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def legacy_hash(password: str, secret: str) -> str:
    return hashlib.sha256((password + secret).encode('utf-8')).hexdigest()


def is_bcrypt_hash(password_hash: str) -> bool:
    return password_hash.startswith("$2")


def verify_password(password: str, password_hash: str, legacy_secret: str | None) -> tuple[bool, bool]:
    """
    Returns (valid, needs_rehash).

    needs_rehash is True only for a successful legacy-digest match.
    """
    if not password or not password_hash:
        return False, False

    if is_bcrypt_hash(password_hash):
        try:
            return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8')), False
        except ValueError:
            # Malformed stored hash
            return False, False

    if not legacy_secret:
        return False, False
    candidate = legacy_hash(password, legacy_secret)
    if hmac.compare_digest(candidate, password_hash.lower()):
        return True, True
    return False, False


def upgrade_password_hash(user: AdminUser, password: str) -> bool:
    """Replace a legacy digest with bcrypt. Failure leaves the legacy hash usable."""
    try:
        user.password_hash = hash_password(password)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Password hash upgrade failed for user %s", user.id)
        return False
    logger.info("Migrated password for user %s from SHA256 to bcrypt", user.email)
    return True


def find_user_by_email(email: str) -> AdminUser | None:
    if not email:
        return None
    return db.session.query(AdminUser).filter_by(email=email.strip().lower()).first()


def get_user(user_id) -> AdminUser | None:
    if user_id is None:
        return None
    return db.session.get(AdminUser, user_id)


def record_login(user: AdminUser) -> None:
    user.last_login = utcnow()
    db.session.commit()


def public_user(user: AdminUser) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "role": user.role}


def create_admin_user(email: str, name: str, password: str, role: str) -> AdminUser:
    """
    Create an administrator with a bcrypt password.

    Raises ValueError on bad email/role or duplicate email and
    PasswordValidationError on a weak password.
    """
    result = validate_email(email)
    if not result.valid:
        raise ValueError(result.error)
    if role not in ADMIN_ROLES:
        raise ValueError(f"Unknown role: {role}")
    validate_password_strength(password)

    normalized = email.strip().lower()
    if find_user_by_email(normalized):
        raise ValueError(f"An admin with email {normalized} already exists")

    user = AdminUser(
        email=normalized,
        name=name.strip(),
        role=role,
        password_hash=hash_password(password),
        is_active=True,
        mfa_enabled=False,
    )
    db.session.add(user)
    db.session.commit()
    return user
