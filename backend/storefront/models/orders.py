from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..money import to_major
from ..time_utils import to_utc_z, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    GIFT_CARD = "gift_card"


# Forward-only progression; CANCELLED is reachable from any non-terminal state
STATUS_SEQUENCE = (
    OrderStatus.PENDING.value,
    OrderStatus.PAID.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)
TERMINAL_STATUSES = {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}


class Order(db.Model):
    """
    Customer order.

    INVARIANT: total = subtotal - discount - gift card + shipping (pence).
    `payment_id` is the idempotency key for processor-driven creation.
    `phone` and `shipping_address` hold ciphertext when an encryption key
    is configured (see crypto_service).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    customer_email = db.Column(db.String(254), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.Text, nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)

    items = db.Column(db.JSON, nullable=False, default=list)

    subtotal_pence = db.Column(db.Integer, nullable=False)
    shipping_pence = db.Column(db.Integer, nullable=False, default=0)
    discount_code = db.Column(db.String(64), nullable=True)
    discount_pence = db.Column(db.Integer, nullable=False, default=0)
    gift_card_code = db.Column(db.String(32), nullable=True)
    gift_card_pence = db.Column(db.Integer, nullable=False, default=0)
    total_pence = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_method = db.Column(db.String(16), nullable=False)
    payment_id = db.Column(db.String(255), nullable=True, unique=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_public_dict(self) -> dict:
        """Fields safe to return to an anonymous order lookup."""
        return {
            "order_number": self.order_number,
            "status": self.status,
            "items": self.items,
            "total": to_major(self.total_pence),
            "shipping": to_major(self.shipping_pence),
            "created_at": to_utc_z(self.created_at),
        }

    def to_dict(self, phone=None, shipping_address=None) -> dict:
        """Admin view; the caller passes decrypted PII."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "phone": phone,
            "shipping_address": shipping_address,
            "items": self.items,
            "subtotal": to_major(self.subtotal_pence),
            "shipping": to_major(self.shipping_pence),
            "discount_code": self.discount_code,
            "discount_amount": to_major(self.discount_pence),
            "gift_card_code": self.gift_card_code,
            "gift_card_amount": to_major(self.gift_card_pence),
            "total": to_major(self.total_pence),
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_id": self.payment_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
