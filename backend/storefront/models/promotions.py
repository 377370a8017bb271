from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..money import to_major
from ..time_utils import to_utc_z, utcnow


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_DELIVERY = "free_delivery"


class DiscountCode(db.Model):
    """
    Promotional code.

    `value` is a percentage for PERCENTAGE and a major-unit amount for FIXED;
    FREE_DELIVERY ignores it. Validity window is [starts_at, expires_at).
    """
    __tablename__ = "discount_codes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)  # stored uppercase
    name = db.Column(db.String(255), nullable=True)

    discount_type = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    starts_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    max_uses = db.Column(db.Integer, nullable=True)
    max_uses_per_customer = db.Column(db.Integer, nullable=True)
    min_order_pence = db.Column(db.Integer, nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": float(self.value) if self.value is not None else None,
            "is_active": self.is_active,
            "starts_at": to_utc_z(self.starts_at),
            "expires_at": to_utc_z(self.expires_at),
            "max_uses": self.max_uses,
            "max_uses_per_customer": self.max_uses_per_customer,
            "min_order_amount": to_major(self.min_order_pence),
            "use_count": self.use_count,
        }


class DiscountUsage(db.Model):
    """Append-only (discount, lowercased email) record for per-customer caps."""
    __tablename__ = "discount_usage"
    __table_args__ = (
        db.Index("ix_discount_usage_code_email", "discount_code_id", "customer_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    discount_code_id = db.Column(db.Integer, db.ForeignKey("discount_codes.id"), nullable=False)
    customer_email = db.Column(db.String(254), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    discount_code = db.relationship("DiscountCode", backref=db.backref("usages", lazy=True))
