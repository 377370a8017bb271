# Overview: Service-layer operations for orders; numbering, insertion, lookups, status lifecycle, and stock decrements.

from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Order, OrderStatus, Product
from ..models.orders import STATUS_SEQUENCE, TERMINAL_STATUSES
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError
from . import crypto_service
from .concurrency import compare_and_swap, violated_constraint


logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def generate_order_number(now: datetime | None = None) -> str:
    """FS-YYYYMMDD-NNNN on the UTC date."""
    now = now or utcnow()
    return f"FS-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


def create_order(
    *,
    customer_email: str,
    customer_name: str,
    items: list[dict],
    subtotal_pence: int,
    shipping_pence: int,
    total_pence: int,
    payment_method: str,
    status: str = OrderStatus.PAID.value,
    payment_id: str | None = None,
    phone: str | None = None,
    shipping_address: dict | None = None,
    discount_code: str | None = None,
    discount_pence: int = 0,
    gift_card_code: str | None = None,
    gift_card_pence: int = 0,
    notes: str | None = None,
    order_number: str | None = None,
) -> Order:
    """
    Insert and commit an order, encrypting phone and address.

    A unique violation on order_number is retried with a fresh number.
    Any other IntegrityError (notably a duplicate payment_id) propagates
    after rollback so the caller can tell a lost idempotency race apart.
    """
    encrypted_phone = crypto_service.encrypt(phone) if phone else None
    encrypted_address = crypto_service.encrypt_address(shipping_address)

    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order = Order(
            order_number=order_number if (order_number and attempt == 1) else generate_order_number(),
            customer_email=customer_email.strip().lower(),
            customer_name=customer_name,
            phone=encrypted_phone,
            shipping_address=encrypted_address,
            items=items,
            subtotal_pence=subtotal_pence,
            shipping_pence=shipping_pence,
            discount_code=discount_code,
            discount_pence=discount_pence,
            gift_card_code=gift_card_code,
            gift_card_pence=gift_card_pence,
            total_pence=total_pence,
            status=status,
            payment_method=payment_method,
            payment_id=payment_id,
            notes=notes,
        )
        try:
            db.session.add(order)
            db.session.commit()
            return order
        except IntegrityError as exc:
            db.session.rollback()
            if "order_number" in violated_constraint(exc) and attempt < ORDER_NUMBER_ATTEMPTS:
                logger.warning("Order number %s collided, retrying", order.order_number)
                continue
            raise
    raise RuntimeError("Failed to allocate an order number")


def get_by_order_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def get_by_payment_id(payment_id: str | None) -> Order | None:
    if not payment_id:
        return None
    return db.session.query(Order).filter_by(payment_id=payment_id).first()


def list_orders(status: str | None = None, limit: int = 50, offset: int = 0) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    total = query.count()
    rows = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def admin_dict(order: Order) -> dict:
    """Full order with PII decrypted for administrators."""
    return order.to_dict(
        phone=crypto_service.decrypt(order.phone),
        shipping_address=crypto_service.decrypt_address(order.shipping_address),
    )


# =============================================================================
# STATUS LIFECYCLE
# =============================================================================

def can_transition(current: str, new: str) -> bool:
    """
    Forward-only along pending -> paid -> shipped -> delivered.
    CANCELLED is reachable from any non-terminal state.
    """
    if current in TERMINAL_STATUSES or current == new:
        return False
    if new == OrderStatus.CANCELLED.value:
        return True
    if current not in STATUS_SEQUENCE or new not in STATUS_SEQUENCE:
        return False
    return STATUS_SEQUENCE.index(new) > STATUS_SEQUENCE.index(current)


def update_status(order_id: int, new_status: str, notes: str | None = None) -> tuple[Order, str]:
    """Move an order along its lifecycle and commit. Returns (order, previous_status)."""
    valid = {s.value for s in OrderStatus}
    if new_status not in valid:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(valid))}")

    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")

    previous = order.status
    if not can_transition(previous, new_status):
        raise ValidationError(f"Cannot change order status from {previous} to {new_status}")

    order.status = new_status
    if notes is not None:
        order.notes = notes
    db.session.commit()
    return order, previous


# =============================================================================
# STOCK
# =============================================================================

def decrement_stock(product_id: int, quantity: int) -> bool:
    """
    Take `quantity` units off a product, clamping at zero, and commit.

    The write is a CAS on the observed stock. On contention the row is read
    once more and written without the predicate; payment is already
    captured, so this never raises for contention or a missing product and
    returns False when the atomic path did not hold.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        logger.critical("CRITICAL: Product %s missing during stock decrement", product_id)
        return False

    observed = product.stock
    new_stock = max(0, observed - quantity)
    if compare_and_swap(Product, product_id, "stock", observed, {Product.stock: new_stock, Product.updated_at: utcnow()}):
        db.session.commit()
        return True

    db.session.rollback()
    logger.critical(
        "CRITICAL: Stock update conflict for product %s (expected stock %s). Retrying without lock.",
        product_id,
        observed,
    )
    try:
        db.session.expire_all()
        fresh = db.session.get(Product, product_id)
        if fresh is not None:
            fresh.stock = max(0, fresh.stock - quantity)
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.critical("CRITICAL: Stock retry failed for product %s", product_id, exc_info=True)
    return False
