# Overview: Service-layer operations for stored-value gift cards; codes, status checks, CAS deductions, and the ledger.

"""
Gift cards.

Balance changes go through `deduct`, a compare-and-swap on
current_balance_pence that also moves status between active and depleted.
Every balance change appends a GiftCardTransaction. Functions that mutate
leave the commit to the caller unless documented otherwise.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from ..extensions import db
from ..models import GiftCard, GiftCardStatus, GiftCardTransaction, GiftCardTransactionType
from ..money import format_major, to_major
from ..time_utils import utcnow
from ..validation import GIFT_CARD_CODE_ALPHABET, ConflictError, NotFoundError, ValidationError
from .concurrency import compare_and_swap


logger = logging.getLogger(__name__)

CODE_ALPHABET = GIFT_CARD_CODE_ALPHABET
CODE_GENERATION_ATTEMPTS = 10
CARD_VALIDITY = timedelta(days=365)

MIN_PURCHASE_PENCE = 500
MAX_PURCHASE_PENCE = 50000

STATUS_MESSAGES = {
    GiftCardStatus.PENDING.value: "This gift card has not been activated yet",
    GiftCardStatus.DEPLETED.value: "This gift card has no remaining balance",
    GiftCardStatus.EXPIRED.value: "This gift card has expired",
    GiftCardStatus.CANCELLED.value: "This gift card has been cancelled",
}


@dataclass(frozen=True)
class GiftCardQuote:
    """What a card can contribute to an order of `order_pence`."""
    card: GiftCard
    balance_pence: int
    applicable_pence: int

    @property
    def remaining_pence(self) -> int:
        return self.balance_pence - self.applicable_pence


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _draw_alphabet_chars(count: int) -> list[str]:
    # Bytes at or above the largest multiple of the alphabet size are discarded
    limit = 256 - 256 % len(CODE_ALPHABET)
    chars: list[str] = []
    while len(chars) < count:
        for b in secrets.token_bytes(count):
            if b < limit and len(chars) < count:
                chars.append(CODE_ALPHABET[b % len(CODE_ALPHABET)])
    return chars


def generate_code() -> str:
    """GC-XXXX-XXXX-XXXX from the unambiguous alphabet."""
    chars = "".join(_draw_alphabet_chars(12))
    return f"GC-{chars[0:4]}-{chars[4:8]}-{chars[8:12]}"


def generate_unique_code() -> str:
    for _ in range(CODE_GENERATION_ATTEMPTS):
        code = generate_code()
        if not db.session.query(GiftCard.id).filter_by(code=code).first():
            return code
    raise RuntimeError("Failed to generate unique gift card code")


def find_by_code(code: str | None) -> GiftCard | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.session.query(GiftCard).filter_by(code=normalized).first()


def add_transaction(
    card: GiftCard,
    transaction_type: str,
    amount_pence: int,
    balance_after_pence: int,
    order_id: int | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
) -> GiftCardTransaction:
    entry = GiftCardTransaction(
        gift_card_id=card.id,
        order_id=order_id,
        transaction_type=transaction_type,
        amount_pence=amount_pence,
        balance_after_pence=balance_after_pence,
        notes=notes,
        performed_by=performed_by,
        created_at=utcnow(),
    )
    db.session.add(entry)
    return entry


# =============================================================================
# STATUS
# =============================================================================

def is_past_expiry(card: GiftCard) -> bool:
    return card.expires_at is not None and card.expires_at <= utcnow()


def expire_if_due(card: GiftCard, forfeit: bool = False) -> bool:
    """
    Mark an active card past its expiry as expired and commit.

    With `forfeit`, the remaining balance goes to zero and an expiration
    ledger entry records the forfeited amount.
    """
    if card.status != GiftCardStatus.ACTIVE.value or not is_past_expiry(card):
        return False

    forfeited = card.current_balance_pence
    values = {GiftCard.status: GiftCardStatus.EXPIRED.value, GiftCard.updated_at: utcnow()}
    if forfeit:
        values[GiftCard.current_balance_pence] = 0

    if not compare_and_swap(GiftCard, card.id, "status", GiftCardStatus.ACTIVE.value, values):
        db.session.rollback()
        db.session.refresh(card)
        return card.status == GiftCardStatus.EXPIRED.value

    if forfeit and forfeited > 0:
        add_transaction(
            card,
            GiftCardTransactionType.EXPIRATION.value,
            -forfeited,
            0,
            notes="Gift card expired - balance forfeited",
        )
    db.session.commit()
    db.session.refresh(card)
    return True


def require_usable(code: str | None) -> GiftCard:
    """Active, unexpired card with a balance, or ValidationError naming why not."""
    card = find_by_code(code)
    if card is None:
        raise ValidationError("Invalid gift card code")

    expire_if_due(card)
    if card.status != GiftCardStatus.ACTIVE.value:
        raise ValidationError(STATUS_MESSAGES.get(card.status, "Invalid gift card code"))
    if card.current_balance_pence <= 0:
        raise ValidationError(STATUS_MESSAGES[GiftCardStatus.DEPLETED.value])
    return card


def quote(code: str | None, order_pence: int, requested_pence: int | None = None) -> GiftCardQuote:
    card = require_usable(code)
    balance = card.current_balance_pence
    applicable = min(balance, max(order_pence, 0))
    if requested_pence is not None:
        applicable = min(applicable, max(requested_pence, 0))
    return GiftCardQuote(card=card, balance_pence=balance, applicable_pence=applicable)


def validate_for_checkout(code: str | None, subtotal_pence: int) -> dict:
    q = quote(code, subtotal_pence)
    return {
        "valid": True,
        "code": q.card.code,
        "balance": to_major(q.balance_pence),
        "applicable_amount": to_major(q.applicable_pence),
        "remaining_after_use": to_major(q.remaining_pence),
        "covers_full_order": q.applicable_pence >= subtotal_pence,
        "message": f"Gift card applied! £{format_major(q.applicable_pence)} will be deducted.",
    }


def check_balance(code: str | None) -> tuple[GiftCard, list[GiftCardTransaction]]:
    """Public balance lookup; forfeits the balance of a card found past expiry."""
    card = find_by_code(code)
    if card is None:
        raise NotFoundError("Gift card not found. Please check the code and try again.")
    if card.status == GiftCardStatus.PENDING.value:
        raise ValidationError("This gift card has not been activated yet. Payment may still be processing.")

    expire_if_due(card, forfeit=True)

    transactions = (
        db.session.query(GiftCardTransaction)
        .filter_by(gift_card_id=card.id)
        .order_by(GiftCardTransaction.created_at.desc(), GiftCardTransaction.id.desc())
        .all()
    )
    return card, transactions


# =============================================================================
# BALANCE MUTATION
# =============================================================================

def deduct(card: GiftCard, observed_balance_pence: int, amount_pence: int) -> int:
    """
    CAS the balance down by `amount_pence`. Returns the new balance.

    Raises ConflictError when another writer moved the balance first and
    ValidationError when the observed balance cannot cover the amount.
    The caller owns the commit.
    """
    if amount_pence <= 0:
        return observed_balance_pence
    if amount_pence > observed_balance_pence:
        raise ValidationError("Gift card balance is insufficient")

    new_balance = observed_balance_pence - amount_pence
    status = GiftCardStatus.DEPLETED.value if new_balance == 0 else GiftCardStatus.ACTIVE.value
    swapped = compare_and_swap(
        GiftCard,
        card.id,
        "current_balance_pence",
        observed_balance_pence,
        {
            GiftCard.current_balance_pence: new_balance,
            GiftCard.status: status,
            GiftCard.updated_at: utcnow(),
        },
    )
    if not swapped:
        raise ConflictError("Gift card balance was modified. Please try again.")
    return new_balance


def restore(card: GiftCard, balance_pence: int) -> None:
    """Compensation after a failed order insert: put the observed balance back and commit."""
    db.session.query(GiftCard).filter(GiftCard.id == card.id).update(
        {
            GiftCard.current_balance_pence: balance_pence,
            GiftCard.status: GiftCardStatus.ACTIVE.value,
            GiftCard.updated_at: utcnow(),
        },
        synchronize_session=False,
    )
    db.session.commit()


# =============================================================================
# PURCHASE
# =============================================================================

def create_pending_purchase(
    amount_pence: int,
    purchaser_name: str,
    purchaser_email: str,
    recipient_name: str | None = None,
    recipient_email: str | None = None,
    personal_message: str | None = None,
    currency: str = "GBP",
) -> GiftCard:
    """Insert a pending card awaiting payment and commit."""
    if amount_pence < MIN_PURCHASE_PENCE or amount_pence > MAX_PURCHASE_PENCE:
        raise ValidationError("Amount must be between £5 and £500")

    card = GiftCard(
        code=generate_unique_code(),
        currency=currency,
        initial_balance_pence=amount_pence,
        current_balance_pence=amount_pence,
        status=GiftCardStatus.PENDING.value,
        purchaser_name=purchaser_name,
        purchaser_email=purchaser_email.strip().lower(),
        recipient_name=recipient_name or purchaser_name,
        recipient_email=(recipient_email or purchaser_email).strip().lower(),
        personal_message=personal_message,
        expires_at=utcnow() + CARD_VALIDITY,
    )
    db.session.add(card)
    db.session.commit()
    return card


def activate_purchase(card_id: int, session_id: str, payment_id: str | None) -> bool:
    """
    pending -> active once the purchase payment is confirmed, and commit.

    Returns False when the card is missing or already left pending, so a
    redelivered event changes nothing.
    """
    card = db.session.get(GiftCard, card_id)
    if card is None:
        logger.error("Gift card %s not found for activation (session %s)", card_id, session_id)
        return False

    now = utcnow()
    swapped = compare_and_swap(
        GiftCard,
        card.id,
        "status",
        GiftCardStatus.PENDING.value,
        {
            GiftCard.status: GiftCardStatus.ACTIVE.value,
            GiftCard.activated_at: now,
            GiftCard.payment_id: payment_id,
            GiftCard.updated_at: now,
        },
    )
    if not swapped:
        db.session.rollback()
        logger.info("Gift card %s already activated", card.code)
        return False

    add_transaction(
        card,
        GiftCardTransactionType.ACTIVATION.value,
        card.initial_balance_pence,
        card.initial_balance_pence,
        notes=f"Payment confirmed - Stripe Session: {session_id}",
    )
    db.session.commit()
    logger.info("Gift card %s activated", card.code)
    return True
