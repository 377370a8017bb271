# Overview: Payment finaliser shared by the card webhook and wallet capture; idempotent order creation with best-effort side effects.

"""
Payment finalisation.

Once a processor reports money captured, `finalise_payment` turns the
checkout state stashed on the processor object into a paid order:

1. idempotency on payment_id (lookup, then the unique constraint)
2. canonical totals recomputed from the stashed items and tenders
3. order insert (the only step whose failure fails the delivery)
4. stock CAS per line, gift-card CAS, discount usage (logged, never raised)

Insert failures are classified: permanent database errors answer 400 so
the processor stops retrying; everything else answers 500.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import GiftCard, GiftCardTransactionType, Order, OrderStatus, PaymentMethod, Product
from ..money import format_major, to_major, to_pence
from ..validation import CheckoutError, ConflictError, ValidationError
from . import audit_service, checkout_service, discount_service, gift_card_service, order_service
from .audit_service import AMOUNT_MISMATCH_MARKER
from .checkout_service import CheckoutMetadata
from .concurrency import is_permanent_db_error, violated_constraint


logger = logging.getLogger(__name__)

# Pence of disagreement tolerated between captured and recomputed totals
AMOUNT_TOLERANCE_PENCE = 2

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"
GIFT_CARD_PURCHASE = "gift_card_purchase"


class FinaliseError(CheckoutError):
    """Order could not be created; `status` is 400 when retrying cannot help."""


@dataclass
class PaymentConfirmation:
    payment_id: str
    payment_method: str
    amount_pence: int
    customer_email: str
    customer_name: str
    metadata: CheckoutMetadata
    phone: str | None = None
    shipping_address: dict | None = None


@dataclass
class FinaliseResult:
    order: Order
    created: bool
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# FINALISER
# =============================================================================

def _order_items(metadata: CheckoutMetadata) -> list[dict]:
    """Snapshot lines from stashed {id, q, p, v}; titles come from the catalog."""
    ids = {int(entry["id"]) for entry in metadata.items}
    titles = {}
    if ids:
        titles = {p.id: p.title for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}

    items = []
    for entry in metadata.items:
        product_id = int(entry["id"])
        unit_pence = int(entry["p"])
        item = {
            "id": product_id,
            "title": titles.get(product_id, f"Product {product_id}"),
            "price": to_major(unit_pence),
            "price_pence": unit_pence,
            "quantity": int(entry["q"]),
        }
        if entry.get("v"):
            item["variation"] = entry["v"]
        items.append(item)
    return items


def _expected_total(metadata: CheckoutMetadata, subtotal_pence: int) -> tuple[int, int]:
    """(shipping, expected total) in pence."""
    shipping = metadata.shipping_pence
    if shipping is None:
        shipping = checkout_service.calculate_shipping(
            subtotal_pence - metadata.discount_pence, metadata.free_delivery
        )
    return shipping, subtotal_pence - metadata.discount_pence - metadata.gift_card_pence + shipping


def _deduct_gift_card(confirmation: PaymentConfirmation, order: Order) -> str | None:
    """CAS the stashed gift-card amount off the card. Returns a warning on failure."""
    metadata = confirmation.metadata
    card = db.session.get(GiftCard, metadata.gift_card_id)
    if card is None:
        logger.critical("CRITICAL: Gift card %s not found for order %s", metadata.gift_card_id, order.order_number)
        return "gift card not found"

    for attempt in (1, 2):
        observed = card.current_balance_pence
        try:
            new_balance = gift_card_service.deduct(card, observed, metadata.gift_card_pence)
            gift_card_service.add_transaction(
                card,
                GiftCardTransactionType.REDEMPTION.value,
                -metadata.gift_card_pence,
                new_balance,
                order_id=order.id,
                notes=f"Order {order.order_number}",
                performed_by=confirmation.customer_email,
            )
            db.session.commit()
            return None
        except ConflictError:
            db.session.rollback()
            db.session.refresh(card)
            if attempt == 2:
                break
        except ValidationError:
            db.session.rollback()
            logger.critical(
                "CRITICAL: Gift card %s balance £%s cannot cover £%s for order %s",
                card.code,
                format_major(observed),
                format_major(metadata.gift_card_pence),
                order.order_number,
            )
            return "gift card balance insufficient"
        except SQLAlchemyError:
            db.session.rollback()
            logger.critical("CRITICAL: Gift card deduction failed for order %s", order.order_number, exc_info=True)
            return "gift card deduction failed"

    logger.critical(
        "CRITICAL: Gift card %s balance changed concurrently; £%s not deducted for order %s",
        card.code,
        format_major(metadata.gift_card_pence),
        order.order_number,
    )
    return "gift card deduction conflict"


def finalise_payment(confirmation: PaymentConfirmation) -> FinaliseResult:
    existing = order_service.get_by_payment_id(confirmation.payment_id)
    if existing is not None:
        logger.info("Order already exists for payment %s, skipping", confirmation.payment_id)
        return FinaliseResult(order=existing, created=False)

    metadata = confirmation.metadata
    try:
        items = _order_items(metadata)
    except (KeyError, TypeError, ValueError) as exc:
        raise FinaliseError(f"Unreadable order items: {exc}", 400)
    if not items:
        raise FinaliseError("Payment carries no order items", 400)

    subtotal = sum(item["price_pence"] * item["quantity"] for item in items)
    shipping, expected = _expected_total(metadata, subtotal)

    notes = None
    mismatch = abs(confirmation.amount_pence - expected) > AMOUNT_TOLERANCE_PENCE
    if mismatch:
        notes = (
            f"[REVIEW] {AMOUNT_MISMATCH_MARKER}: expected £{format_major(expected)}, "
            f"received £{format_major(confirmation.amount_pence)}"
        )
        logger.critical(
            "CRITICAL: Amount mismatch for payment %s: expected %s, received %s",
            confirmation.payment_id,
            expected,
            confirmation.amount_pence,
        )

    try:
        order = order_service.create_order(
            customer_email=confirmation.customer_email,
            customer_name=confirmation.customer_name,
            phone=confirmation.phone,
            shipping_address=confirmation.shipping_address,
            items=items,
            subtotal_pence=subtotal,
            shipping_pence=shipping,
            discount_code=metadata.discount_code,
            discount_pence=metadata.discount_pence,
            gift_card_code=metadata.gift_card_code,
            gift_card_pence=metadata.gift_card_pence,
            total_pence=expected,
            status=OrderStatus.PAID.value,
            payment_method=confirmation.payment_method,
            payment_id=confirmation.payment_id,
            notes=notes,
        )
    except IntegrityError as exc:
        if "payment_id" in violated_constraint(exc):
            logger.info("Concurrent delivery already created the order for %s", confirmation.payment_id)
            return FinaliseResult(order=order_service.get_by_payment_id(confirmation.payment_id), created=False)
        logger.exception("Order insert failed permanently for payment %s", confirmation.payment_id)
        raise FinaliseError("Order creation failed permanently", 400)
    except SQLAlchemyError as exc:
        db.session.rollback()
        if is_permanent_db_error(exc):
            logger.exception("Order insert failed permanently for payment %s", confirmation.payment_id)
            raise FinaliseError("Order creation failed permanently", 400)
        logger.exception("Order insert failed for payment %s", confirmation.payment_id)
        raise FinaliseError("Order creation failed", 500)

    logger.info("Order %s created for payment %s", order.order_number, confirmation.payment_id)
    result = FinaliseResult(order=order, created=True)

    for item in items:
        if not order_service.decrement_stock(item["id"], item["quantity"]):
            result.warnings.append(f"stock for product {item['id']}")

    if metadata.gift_card_id and metadata.gift_card_pence > 0:
        warning = _deduct_gift_card(confirmation, order)
        if warning:
            result.warnings.append(warning)

    if metadata.discount_code:
        if not discount_service.record_usage(
            code=metadata.discount_code, customer_email=confirmation.customer_email, order_id=order.id
        ):
            result.warnings.append("discount usage")

    if mismatch:
        audit_service.check_amount_anomaly(
            order.order_number, expected, confirmation.amount_pence, confirmation.customer_email
        )
    return result


# =============================================================================
# CARD PROCESSOR EVENTS
# =============================================================================

def _card_address(session: dict) -> dict | None:
    shipping = (
        session.get("shipping_details")
        or (session.get("collected_information") or {}).get("shipping_details")
        or {}
    )
    address = shipping.get("address") or (session.get("customer_details") or {}).get("address")
    if not address:
        return None
    return {
        "line1": address.get("line1") or "",
        "line2": address.get("line2") or "",
        "city": address.get("city") or "",
        "county": address.get("state") or "",
        "postcode": address.get("postal_code") or "",
        "country": address.get("country") or "",
    }


def card_confirmation(session: dict) -> PaymentConfirmation:
    """Raises ValueError when the session cannot be read."""
    details = session.get("customer_details") or {}
    email = details.get("email") or session.get("customer_email")
    if not email:
        raise ValueError("session has no customer email")
    shipping = session.get("shipping_details") or {}
    return PaymentConfirmation(
        payment_id=session.get("payment_intent") or session["id"],
        payment_method=PaymentMethod.CARD.value,
        amount_pence=int(session.get("amount_total") or 0),
        customer_email=email,
        customer_name=details.get("name") or shipping.get("name") or "Customer",
        phone=details.get("phone"),
        shipping_address=_card_address(session),
        metadata=checkout_service.parse_card_metadata(session.get("metadata")),
    )


def _activate_gift_card(session: dict) -> dict:
    metadata = session.get("metadata") or {}
    try:
        card_id = int(metadata.get("gift_card_id"))
    except (TypeError, ValueError):
        raise FinaliseError("Gift card purchase is missing its card id", 400)
    activated = gift_card_service.activate_purchase(card_id, session["id"], session.get("payment_intent"))
    if activated:
        audit_service.log_event(
            audit_service.AuditAction.GIFT_CARD_ACTIVATED,
            resource_type="gift_card",
            resource_id=card_id,
            details={"session_id": session["id"]},
        )
    return {"received": True, "activated": activated}


def handle_card_event(gateway, event: dict) -> dict:
    """Dispatch a verified card processor event. Raises FinaliseError."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == PAYMENT_FAILED:
        error = (obj.get("last_payment_error") or {}).get("message")
        logger.warning("Payment failed for %s: %s", obj.get("id"), error)
        return {"received": True}

    if event_type != CHECKOUT_COMPLETED:
        logger.info("Ignoring card event type %s", event_type)
        return {"received": True}

    session = gateway.retrieve_card_session(obj["id"])
    metadata = session.get("metadata") or {}

    if metadata.get("type") == GIFT_CARD_PURCHASE:
        return _activate_gift_card(session)

    if session.get("payment_status") not in (None, "paid", "no_payment_required"):
        logger.info("Session %s completed with payment status %s", session.get("id"), session.get("payment_status"))
        return {"received": True}

    try:
        confirmation = card_confirmation(session)
    except (KeyError, TypeError, ValueError) as exc:
        logger.error("Unreadable card session %s: %s", session.get("id"), exc)
        raise FinaliseError("Invalid session payload", 400)

    result = finalise_payment(confirmation)
    return {"received": True, "order_number": result.order.order_number, "duplicate": not result.created}


# =============================================================================
# WALLET CAPTURE
# =============================================================================

def _wallet_address(unit: dict) -> dict | None:
    address = (unit.get("shipping") or {}).get("address")
    if not address:
        return None
    return {
        "line1": address.get("address_line_1") or "",
        "line2": address.get("address_line_2") or "",
        "city": address.get("admin_area_2") or "",
        "county": address.get("admin_area_1") or "",
        "postcode": address.get("postal_code") or "",
        "country": address.get("country_code") or "",
    }


def capture_wallet_payment(gateway, order_id: str, customer: dict | None = None) -> dict:
    """Capture an approved wallet order and finalise it. Raises CheckoutError."""
    capture = gateway.capture_wallet_order(order_id)
    if capture.get("status") != "COMPLETED":
        raise CheckoutError("Payment not completed", 400)

    order = gateway.get_wallet_order(order_id)
    units = order.get("purchase_units") or capture.get("purchase_units") or []
    unit = units[0] if units else {}
    captures = ((unit.get("payments") or {}).get("captures")) or []
    if not captures:
        captures = (((capture.get("purchase_units") or [{}])[0].get("payments") or {}).get("captures")) or []
    if not captures:
        raise CheckoutError("Payment capture missing", 400)

    customer = customer or {}
    payer = order.get("payer") or capture.get("payer") or {}
    payer_name = payer.get("name") or {}
    full_name = " ".join(part for part in (payer_name.get("given_name"), payer_name.get("surname")) if part)

    try:
        confirmation = PaymentConfirmation(
            payment_id=captures[0]["id"],
            payment_method=PaymentMethod.WALLET.value,
            amount_pence=to_pence(captures[0]["amount"]["value"]),
            customer_email=customer.get("email") or payer.get("email_address") or "",
            customer_name=(
                customer.get("name")
                or ((unit.get("shipping") or {}).get("name") or {}).get("full_name")
                or full_name
                or "Customer"
            ),
            phone=customer.get("phone"),
            shipping_address=_wallet_address(unit),
            metadata=checkout_service.parse_wallet_order(order),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.error("Unreadable wallet order %s: %s", order_id, exc)
        raise CheckoutError("Invalid wallet order", 400)

    if not confirmation.customer_email:
        raise CheckoutError("Customer email is required", 400)

    result = finalise_payment(confirmation)
    return {
        "success": True,
        "order_number": result.order.order_number,
        "total": to_major(result.order.total_pence),
    }
