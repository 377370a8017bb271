from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..money import to_major
from ..time_utils import to_utc_z, utcnow


class GiftCardStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DEPLETED = "depleted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class GiftCardTransactionType(str, Enum):
    ACTIVATION = "activation"
    REDEMPTION = "redemption"
    EXPIRATION = "expiration"


class GiftCard(db.Model):
    """
    Stored-value card.

    INVARIANTS:
    - 0 <= current_balance_pence <= initial_balance_pence
    - once activated, status == depleted iff current_balance_pence == 0
    - balance changes only through compare-and-swap on current_balance_pence
    """
    __tablename__ = "gift_cards"
    __table_args__ = (
        db.CheckConstraint("current_balance_pence >= 0", name="ck_gift_cards_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    currency = db.Column(db.String(3), nullable=False, default="GBP")

    initial_balance_pence = db.Column(db.Integer, nullable=False)
    current_balance_pence = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=GiftCardStatus.PENDING.value, index=True)

    purchaser_name = db.Column(db.String(255), nullable=True)
    purchaser_email = db.Column(db.String(254), nullable=True)
    recipient_name = db.Column(db.String(255), nullable=True)
    recipient_email = db.Column(db.String(254), nullable=True)
    personal_message = db.Column(db.Text, nullable=True)

    payment_id = db.Column(db.String(255), nullable=True)

    expires_at = db.Column(db.DateTime, nullable=True)
    activated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "currency": self.currency,
            "initial_balance": to_major(self.initial_balance_pence),
            "current_balance": to_major(self.current_balance_pence),
            "status": self.status,
            "recipient_name": self.recipient_name,
            "expires_at": to_utc_z(self.expires_at),
            "activated_at": to_utc_z(self.activated_at),
            "created_at": to_utc_z(self.created_at),
        }


class GiftCardTransaction(db.Model):
    """Append-only balance ledger. Redemption and expiration amounts are negative."""
    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        db.Index("ix_gift_card_transactions_card_created", "gift_card_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    gift_card_id = db.Column(db.Integer, db.ForeignKey("gift_cards.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    transaction_type = db.Column(db.String(16), nullable=False)
    amount_pence = db.Column(db.Integer, nullable=False)
    balance_after_pence = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    performed_by = db.Column(db.String(254), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    gift_card = db.relationship("GiftCard", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "type": self.transaction_type,
            "amount": to_major(self.amount_pence),
            "balance_after": to_major(self.balance_after_pence),
            "notes": self.notes,
            "order_id": self.order_id,
            "created_at": to_utc_z(self.created_at),
        }
