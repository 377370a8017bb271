# Overview: Service-layer operations for promotional codes; eligibility rules, amounts, and usage recording.

"""
Discount codes.

Eligibility is checked in a fixed order and fails with the first specific
message: active, window [starts_at, expires_at), global use cap, per-customer
cap, minimum order. Amounts are pence; a monetary discount never exceeds the
subtotal. FREE_DELIVERY is worth nothing itself and zeroes shipping later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import DiscountCode, DiscountType, DiscountUsage
from ..money import format_major, round_half_up, to_major
from ..time_utils import utcnow
from ..validation import ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedDiscount:
    id: int
    code: str
    discount_type: str
    value: Decimal
    amount_pence: int

    @property
    def free_delivery(self) -> bool:
        return self.discount_type == DiscountType.FREE_DELIVERY.value


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def find_by_code(code: str | None) -> DiscountCode | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.session.query(DiscountCode).filter_by(code=normalized).first()


def customer_usage_count(discount_id: int, email: str) -> int:
    return (
        db.session.query(DiscountUsage)
        .filter_by(discount_code_id=discount_id, customer_email=email.strip().lower())
        .count()
    )


def compute_amount(discount: DiscountCode, subtotal_pence: int) -> int:
    value = Decimal(discount.value or 0)
    if discount.discount_type == DiscountType.PERCENTAGE.value:
        amount = round_half_up(Decimal(subtotal_pence) * value / 100)
    elif discount.discount_type == DiscountType.FIXED.value:
        amount = round_half_up(value * 100)
    else:
        return 0
    return max(0, min(amount, subtotal_pence))


def check_eligibility(discount: DiscountCode | None, subtotal_pence: int, customer_email: str | None = None) -> None:
    """Raises ValidationError with the first failing rule."""
    if discount is None:
        raise ValidationError("Invalid discount code")
    if not discount.is_active:
        raise ValidationError("This discount code is no longer active")

    now = utcnow()
    if discount.starts_at is not None and discount.starts_at > now:
        raise ValidationError("This discount code is not yet active")
    if discount.expires_at is not None and discount.expires_at <= now:
        raise ValidationError("This discount code has expired")

    if discount.max_uses is not None and discount.use_count >= discount.max_uses:
        raise ValidationError("This discount code has reached its usage limit")

    if discount.max_uses_per_customer is not None and customer_email:
        if customer_usage_count(discount.id, customer_email) >= discount.max_uses_per_customer:
            raise ValidationError("You have already used this code the maximum number of times")

    if discount.min_order_pence is not None and subtotal_pence < discount.min_order_pence:
        raise ValidationError(
            f"This discount code requires a minimum order of £{format_major(discount.min_order_pence)}"
        )


def apply(code: str | None, subtotal_pence: int, customer_email: str | None = None) -> AppliedDiscount:
    discount = find_by_code(code)
    check_eligibility(discount, subtotal_pence, customer_email)
    return AppliedDiscount(
        id=discount.id,
        code=discount.code,
        discount_type=discount.discount_type,
        value=Decimal(discount.value or 0),
        amount_pence=compute_amount(discount, subtotal_pence),
    )


def describe(discount: DiscountCode) -> str:
    if discount.discount_type == DiscountType.PERCENTAGE.value:
        return f"{Decimal(discount.value).normalize():f}% off applied!"
    if discount.discount_type == DiscountType.FREE_DELIVERY.value:
        return "Free delivery applied!"
    return f"£{Decimal(discount.value):.2f} off applied!"


def record_usage(discount_id: int | None = None, code: str | None = None,
                 customer_email: str | None = None, order_id: int | None = None) -> bool:
    """
    Count one redemption and append the per-customer usage row.

    The increment is a single UPDATE ... SET use_count = use_count + 1 so
    concurrent redemptions never lose a count. Failures are logged; the
    order that triggered this is already committed.
    """
    try:
        if discount_id:
            discount = db.session.get(DiscountCode, discount_id)
        else:
            discount = find_by_code(code)
        if discount is None:
            logger.warning("Discount %s not found while recording usage", discount_id or code)
            return False

        db.session.query(DiscountCode).filter(DiscountCode.id == discount.id).update(
            {DiscountCode.use_count: DiscountCode.use_count + 1}, synchronize_session=False
        )
        if customer_email:
            db.session.add(
                DiscountUsage(
                    discount_code_id=discount.id,
                    customer_email=customer_email.strip().lower(),
                    order_id=order_id,
                )
            )
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to record discount usage for %s", discount_id or code)
        return False


def validate_for_checkout(code: str | None, subtotal_pence: int, customer_email: str | None = None) -> dict:
    """Preview of what a code would do to a basket; raises ValidationError when ineligible."""
    discount = find_by_code(code)
    check_eligibility(discount, subtotal_pence, customer_email)
    return {
        "valid": True,
        "code": discount.code,
        "name": discount.name,
        "discount_type": discount.discount_type,
        "discount_value": float(discount.value or 0),
        "discount_amount": to_major(compute_amount(discount, subtotal_pence)),
        "min_order_amount": to_major(discount.min_order_pence),
        "message": describe(discount),
    }
