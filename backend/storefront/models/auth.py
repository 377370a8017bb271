from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AdminUser(db.Model):
    """
    Administrator account.

    `password_hash` is bcrypt ($2 prefix) or a legacy SHA-256 hex digest that
    is upgraded on the next successful login. `mfa_backup_codes` holds
    SHA-256(code || mfa_backup_salt) hex digests, never plaintext.
    """
    __tablename__ = "admin_users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(254), nullable=False, unique=True, index=True)  # stored lowercase
    name = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="business_processing")
    password_hash = db.Column(db.String(255), nullable=False)

    mfa_secret = db.Column(db.String(64), nullable=True)
    mfa_enabled = db.Column(db.Boolean, nullable=False, default=False)
    mfa_backup_codes = db.Column(db.JSON, nullable=True)
    mfa_backup_salt = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "mfa_enabled": self.mfa_enabled,
            "is_active": self.is_active,
            "last_login": to_utc_z(self.last_login),
            "created_at": to_utc_z(self.created_at),
        }


class RateLimitRecord(db.Model):
    """Attempt counter for one limiter key, e.g. 'email:a@b.c' or 'ip:1.2.3.4'."""
    __tablename__ = "rate_limits"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(320), nullable=False, unique=True, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    window_expires_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RevokedToken(db.Model):
    """
    Spent refresh-token ids.

    The unique constraint on `jti` makes rotation single-use: a second insert
    of the same id is a replay.
    """
    __tablename__ = "revoked_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(64), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("admin_users.id"), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    revoked_at = db.Column(db.DateTime, nullable=False, default=utcnow)
