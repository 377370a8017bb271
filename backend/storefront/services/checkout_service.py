# Overview: Checkout engine; cart verification, tender composition, processor payloads, and gift-card-only settlement.

"""
Checkout pricing.

A cart is priced in four steps, always from the database:
1. verify_cart: catalog prices and titles replace whatever the client sent
2. discount: discount_service rules on the verified subtotal
3. shipping: free over the threshold, free with a free-delivery code
4. gift card: min(requested, balance, discounted subtotal + shipping)

The Quote carries canonical amounts. Processor payloads get display lines
from `redistribute`, which folds the discount and gift card into unit
prices so the processor's arithmetic lands on the same total.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import GiftCardTransactionType, OrderStatus, PaymentMethod, Product
from ..money import format_major, round_half_up, to_major, to_pence
from ..time_utils import epoch_millis
from ..validation import (
    CheckoutError,
    ConflictError,
    ValidationError,
    check_xss,
    first_error,
    validate_email,
    validate_name,
    validate_order_items,
    validate_phone,
    validate_shipping_address,
    sanitize_string,
)
from . import discount_service, gift_card_service, order_service
from .discount_service import AppliedDiscount
from .gift_card_service import GiftCardQuote


logger = logging.getLogger(__name__)

# Card processor metadata values are capped at 500 characters
METADATA_VALUE_LIMIT = 500
# Wallet purchase_unit custom_id cap
CUSTOM_ID_LIMIT = 127


@dataclass(frozen=True)
class VerifiedItem:
    product_id: int
    title: str
    unit_pence: int
    quantity: int
    variation: str | None = None

    @property
    def line_pence(self) -> int:
        return self.unit_pence * self.quantity

    @property
    def display_name(self) -> str:
        return f"{self.title} - {self.variation}" if self.variation else self.title

    def snapshot(self) -> dict:
        """Order row representation."""
        data = {
            "id": self.product_id,
            "title": self.title,
            "price": to_major(self.unit_pence),
            "price_pence": self.unit_pence,
            "quantity": self.quantity,
        }
        if self.variation:
            data["variation"] = self.variation
        return data


@dataclass
class Quote:
    items: list[VerifiedItem]
    subtotal_pence: int
    shipping_pence: int
    discount: AppliedDiscount | None = None
    gift_card: GiftCardQuote | None = None

    @property
    def discount_pence(self) -> int:
        return self.discount.amount_pence if self.discount else 0

    @property
    def gift_card_pence(self) -> int:
        return self.gift_card.applicable_pence if self.gift_card else 0

    @property
    def discounted_subtotal_pence(self) -> int:
        return self.subtotal_pence - self.discount_pence

    @property
    def order_value_pence(self) -> int:
        """What the order costs before the gift card is applied."""
        return self.discounted_subtotal_pence + self.shipping_pence

    @property
    def total_pence(self) -> int:
        """Amount left for the external tender."""
        return self.order_value_pence - self.gift_card_pence


@dataclass(frozen=True)
class DisplayLine:
    name: str
    unit_pence: int
    quantity: int
    product_id: int
    variation: str | None = None


@dataclass
class CheckoutMetadata:
    """Checkout state stashed on a processor session and read back by the finaliser."""
    items: list[dict] = field(default_factory=list)
    discount_code: str | None = None
    discount_pence: int = 0
    gift_card_id: int | None = None
    gift_card_code: str | None = None
    gift_card_pence: int = 0
    shipping_pence: int | None = None
    free_delivery: bool = False


# =============================================================================
# PRICING
# =============================================================================

def _variation(item: dict) -> str | None:
    value = item.get("variation")
    if value is None:
        return None
    return sanitize_string(str(value), 100) or None


def verify_cart(items) -> list[VerifiedItem]:
    """Re-price a client cart from the catalog. Raises ValidationError."""
    result = validate_order_items(items)
    if not result:
        raise ValidationError(result.error)

    ids = {item.get("id", item.get("product_id")) for item in items}
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}

    requested: dict[int, int] = {}
    for item in items:
        product_id = item.get("id", item.get("product_id"))
        requested[product_id] = requested.get(product_id, 0) + item["quantity"]

    verified = []
    for item in items:
        product_id = item.get("id", item.get("product_id"))
        product = products.get(product_id)
        if product is None or not product.is_active:
            raise ValidationError(f"Product {product_id} is no longer available")
        if product.stock < requested[product_id]:
            raise ValidationError(f"Insufficient stock for {product.title}. Only {product.stock} available.")
        verified.append(
            VerifiedItem(
                product_id=product.id,
                title=product.title,
                unit_pence=product.price_pence,
                quantity=item["quantity"],
                variation=_variation(item),
            )
        )
    return verified


def calculate_shipping(discounted_subtotal_pence: int, free_delivery: bool = False) -> int:
    if free_delivery:
        return 0
    config = current_app.config
    if discounted_subtotal_pence >= config["SHIPPING_FREE_THRESHOLD_PENCE"]:
        return 0
    return config["SHIPPING_STANDARD_PENCE"]


def _code_field(data: dict, keys: tuple[str, ...], label: str) -> str | None:
    """Trimmed code from the first non-blank key."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValidationError(f"Invalid {label}")
        if value.strip():
            return value.strip()
    return None


def _discount_code(data: dict) -> str | None:
    return _code_field(data, ("discountCode", "discount_code"), "discount code")


def _gift_card_code(data: dict) -> str | None:
    return _code_field(data, ("giftCardCode", "gift_card_code"), "gift card code")


def _requested_gift_card_pence(amount) -> int | None:
    if amount is None or amount == "":
        return None
    try:
        return to_pence(amount)
    except ValueError:
        raise ValidationError("Invalid gift card amount")


def price_cart(
    items,
    discount_code: str | None = None,
    gift_card_code: str | None = None,
    gift_card_amount=None,
    customer_email: str | None = None,
) -> Quote:
    verified = verify_cart(items)
    subtotal = sum(item.line_pence for item in verified)

    discount = None
    if discount_code and discount_code.strip():
        discount = discount_service.apply(discount_code, subtotal, customer_email)

    discounted = subtotal - (discount.amount_pence if discount else 0)
    shipping = calculate_shipping(discounted, free_delivery=bool(discount and discount.free_delivery))
    quote = Quote(items=verified, subtotal_pence=subtotal, shipping_pence=shipping, discount=discount)

    if gift_card_code and gift_card_code.strip():
        quote.gift_card = gift_card_service.quote(
            gift_card_code,
            quote.order_value_pence,
            _requested_gift_card_pence(gift_card_amount),
        )
    return quote


# =============================================================================
# DISPLAY REDISTRIBUTION
# =============================================================================

def _absorb_residual(lines: list[DisplayLine], residual: int) -> list[DisplayLine]:
    """Put a rounding residual on a single unit so line totals hit the target exactly."""
    index = max(range(len(lines)), key=lambda i: lines[i].unit_pence)
    target = lines[index]
    adjusted = target.unit_pence + residual
    if adjusted < 0:
        raise CheckoutError("Unable to price this order for payment", 500)

    if target.quantity == 1:
        lines[index] = DisplayLine(target.name, adjusted, 1, target.product_id, target.variation)
        return lines

    rest = DisplayLine(target.name, target.unit_pence, target.quantity - 1, target.product_id, target.variation)
    single = DisplayLine(target.name, adjusted, 1, target.product_id, target.variation)
    return lines[:index] + [rest, single] + lines[index + 1:]


def redistribute(quote: Quote) -> tuple[list[DisplayLine], int]:
    """
    Display lines and display shipping whose sum equals quote.total_pence.

    Items absorb the promotional discount in full; the gift card comes off
    items and shipping in proportion to their share of the discounted order.
    Display-only: the Quote keeps the canonical amounts.
    """
    lines = [
        DisplayLine(item.display_name, item.unit_pence, item.quantity, item.product_id, item.variation)
        for item in quote.items
    ]
    if quote.discount_pence == 0 and quote.gift_card_pence == 0:
        return lines, quote.shipping_pence

    discount_factor = Decimal(1) - Decimal(quote.discount_pence) / Decimal(quote.subtotal_pence)
    base = quote.order_value_pence
    gift_card_factor = Decimal(1) - Decimal(quote.gift_card_pence) / Decimal(base) if base else Decimal(0)

    display_shipping = round_half_up(Decimal(quote.shipping_pence) * gift_card_factor)
    items_target = quote.total_pence - display_shipping

    scaled = [
        DisplayLine(
            line.name,
            round_half_up(Decimal(line.unit_pence) * discount_factor * gift_card_factor),
            line.quantity,
            line.product_id,
            line.variation,
        )
        for line in lines
    ]
    residual = items_target - sum(line.unit_pence * line.quantity for line in scaled)
    if residual:
        scaled = _absorb_residual(scaled, residual)
    return scaled, display_shipping


# =============================================================================
# PROCESSOR PAYLOADS
# =============================================================================

def _compact(value) -> str:
    return json.dumps(value, separators=(",", ":"))


def _metadata_items(quote: Quote) -> list[dict]:
    items = []
    for item in quote.items:
        entry = {"id": item.product_id, "q": item.quantity, "p": item.unit_pence}
        if item.variation:
            entry["v"] = item.variation
        items.append(entry)
    return items


def card_metadata(quote: Quote) -> dict:
    """String-only metadata; the items JSON is split across items, items_1, ... when long."""
    encoded = _compact(_metadata_items(quote))
    chunks = [encoded[i:i + METADATA_VALUE_LIMIT] for i in range(0, len(encoded), METADATA_VALUE_LIMIT)]

    metadata = {"items": chunks[0] if chunks else "[]"}
    for index, chunk in enumerate(chunks[1:], start=1):
        metadata[f"items_{index}"] = chunk

    metadata["shipping"] = str(quote.shipping_pence)
    metadata["free_delivery"] = "true" if quote.discount and quote.discount.free_delivery else "false"
    if quote.discount:
        metadata["discount_code"] = quote.discount.code
        metadata["discount_amount"] = str(quote.discount_pence)
    if quote.gift_card and quote.gift_card_pence > 0:
        metadata["gift_card_id"] = str(quote.gift_card.card.id)
        metadata["gift_card_code"] = quote.gift_card.card.code
        metadata["gift_card_amount"] = str(quote.gift_card_pence)
    return metadata


def _int_or(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_card_metadata(metadata: dict | None) -> CheckoutMetadata:
    """Inverse of card_metadata. Raises ValueError on an unreadable items payload."""
    metadata = metadata or {}
    encoded = metadata.get("items") or "[]"
    index = 1
    while f"items_{index}" in metadata:
        encoded += metadata[f"items_{index}"]
        index += 1

    items = json.loads(encoded)
    if not isinstance(items, list):
        raise ValueError("items metadata is not a list")

    return CheckoutMetadata(
        items=items,
        discount_code=metadata.get("discount_code") or None,
        discount_pence=_int_or(metadata.get("discount_amount"), 0),
        gift_card_id=_int_or(metadata.get("gift_card_id"), None),
        gift_card_code=metadata.get("gift_card_code") or None,
        gift_card_pence=_int_or(metadata.get("gift_card_amount"), 0),
        shipping_pence=_int_or(metadata.get("shipping"), None),
        free_delivery=metadata.get("free_delivery") == "true",
    )


def card_session_payload(quote: Quote, customer_email: str | None = None) -> dict:
    config = current_app.config
    currency = config["CURRENCY"].lower()
    site_url = config["SITE_URL"].rstrip("/")
    lines, display_shipping = redistribute(quote)

    payload = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": line.name},
                    "unit_amount": line.unit_pence,
                },
                "quantity": line.quantity,
            }
            for line in lines
        ],
        "shipping_address_collection": {"allowed_countries": list(config["SHIPPING_COUNTRIES"])},
        "phone_number_collection": {"enabled": True},
        "success_url": f"{site_url}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{site_url}/cart.html",
        "metadata": card_metadata(quote),
    }
    if display_shipping > 0:
        payload["shipping_options"] = [
            {
                "shipping_rate_data": {
                    "type": "fixed_amount",
                    "fixed_amount": {"amount": display_shipping, "currency": currency},
                    "display_name": "Standard Shipping",
                }
            }
        ]
    if customer_email:
        payload["customer_email"] = customer_email.strip()
    return payload


def _money(pence: int, currency: str) -> dict:
    return {"currency_code": currency, "value": format_major(pence)}


def wallet_custom_id(quote: Quote) -> str:
    data = {"s": quote.shipping_pence}
    if quote.discount:
        data["d"] = quote.discount.code
        data["da"] = quote.discount_pence
        if quote.discount.free_delivery:
            data["f"] = 1
    if quote.gift_card and quote.gift_card_pence > 0:
        data["g"] = quote.gift_card.card.id
        data["ga"] = quote.gift_card_pence
    encoded = _compact(data)
    if len(encoded) > CUSTOM_ID_LIMIT:
        raise CheckoutError("Discount code is too long for wallet checkout")
    return encoded


def wallet_order_payload(quote: Quote) -> dict:
    """
    Wallet order with canonical item prices; discount and gift card travel
    together in breakdown.discount.
    """
    config = current_app.config
    currency = config["CURRENCY"]
    site_url = config["SITE_URL"].rstrip("/")

    items = []
    for item in quote.items:
        entry = {
            "name": item.title[:127],
            "sku": str(item.product_id),
            "unit_amount": _money(item.unit_pence, currency),
            "quantity": str(item.quantity),
        }
        if item.variation:
            entry["description"] = item.variation[:127]
        items.append(entry)

    breakdown = {
        "item_total": _money(quote.subtotal_pence, currency),
        "shipping": _money(quote.shipping_pence, currency),
    }
    reductions = quote.discount_pence + quote.gift_card_pence
    if reductions:
        breakdown["discount"] = _money(reductions, currency)

    return {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "reference_id": "default",
                "custom_id": wallet_custom_id(quote),
                "amount": {**_money(quote.total_pence, currency), "breakdown": breakdown},
                "items": items,
            }
        ],
        "application_context": {
            "brand_name": config["STORE_NAME"],
            "shipping_preference": "GET_FROM_FILE",
            "user_action": "PAY_NOW",
            "return_url": f"{site_url}/success.html",
            "cancel_url": f"{site_url}/cart.html",
        },
    }


def parse_wallet_order(order: dict) -> CheckoutMetadata:
    """Read checkout state back from a wallet order. Raises ValueError when malformed."""
    units = order.get("purchase_units") or []
    if not units:
        raise ValueError("wallet order has no purchase units")
    unit = units[0]

    data = json.loads(unit.get("custom_id") or "{}")
    if not isinstance(data, dict):
        raise ValueError("custom_id is not an object")

    items = []
    for entry in unit.get("items") or []:
        item = {
            "id": int(entry["sku"]),
            "q": int(entry["quantity"]),
            "p": to_pence(entry["unit_amount"]["value"]),
        }
        if entry.get("description"):
            item["v"] = entry["description"]
        items.append(item)

    return CheckoutMetadata(
        items=items,
        discount_code=data.get("d"),
        discount_pence=int(data.get("da") or 0),
        gift_card_id=data.get("g"),
        gift_card_pence=int(data.get("ga") or 0),
        shipping_pence=_int_or(data.get("s"), None),
        free_delivery=bool(data.get("f")),
    )


def _require_payable(quote: Quote) -> None:
    if quote.total_pence <= 0:
        raise CheckoutError("Your gift card covers this order. Please use gift card checkout.")


def create_card_checkout(gateway, data: dict) -> dict:
    customer_email = (data.get("customer_email") or "").strip() or None
    if customer_email and not validate_email(customer_email):
        raise ValidationError("Invalid email format")

    quote = price_cart(
        data.get("items"),
        discount_code=_discount_code(data),
        gift_card_code=_gift_card_code(data),
        gift_card_amount=data.get("giftCardAmount", data.get("gift_card_amount")),
        customer_email=customer_email,
    )
    _require_payable(quote)
    session = gateway.create_card_session(card_session_payload(quote, customer_email))
    return {"sessionId": session.get("id"), "url": session.get("url")}


def create_wallet_checkout(gateway, data: dict) -> dict:
    customer_email = (data.get("customer_email") or "").strip() or None
    quote = price_cart(
        data.get("items"),
        discount_code=_discount_code(data),
        gift_card_code=_gift_card_code(data),
        gift_card_amount=data.get("giftCardAmount", data.get("gift_card_amount")),
        customer_email=customer_email,
    )
    _require_payable(quote)
    order = gateway.create_wallet_order(wallet_order_payload(quote))

    approve_url = next(
        (link.get("href") for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
        None,
    )
    return {"orderID": order.get("id"), "url": approve_url}


# =============================================================================
# GIFT-CARD-ONLY SETTLEMENT
# =============================================================================

def _customer_fields(data: dict) -> tuple[str, str, str | None, dict]:
    email = data.get("customer_email")
    name = data.get("customer_name")
    phone = data.get("customer_phone") or data.get("phone")
    address = data.get("shipping_address")
    if isinstance(address, dict) and "postcode" not in address and "postal_code" in address:
        address = {**address, "postcode": address["postal_code"]}

    error = first_error(
        validate_email(email),
        validate_name(name),
        validate_phone(phone),
        validate_shipping_address(address),
    )
    if error:
        raise ValidationError(error)

    clean_address = {key: sanitize_string(value, 200) for key, value in address.items() if isinstance(value, str)}
    return email.strip().lower(), name.strip(), (phone.strip() if phone else None), clean_address


def gift_card_only_checkout(data: dict) -> dict:
    """
    Settle an order entirely from a gift card.

    Order: validate customer, CAS the balance, insert the paid order,
    compensate the balance if the insert fails, then ledger, discount usage,
    and stock. Raises CheckoutError with the HTTP status to answer.
    """
    try:
        email, name, phone, address = _customer_fields(data)
    except ValidationError as exc:
        raise CheckoutError(str(exc), 400)

    try:
        gift_card_code = _gift_card_code(data)
        if gift_card_code is None:
            raise ValidationError("Gift card code is required")
        quote = price_cart(
            data.get("items"),
            discount_code=_discount_code(data),
            gift_card_code=gift_card_code,
            customer_email=email,
        )
    except ValidationError as exc:
        raise CheckoutError(str(exc), 400)

    card = quote.gift_card.card
    observed_balance = quote.gift_card.balance_pence
    due = quote.order_value_pence
    if observed_balance < due:
        raise CheckoutError(
            f"Gift card balance (£{format_major(observed_balance)}) is insufficient for this order "
            f"(£{format_major(due)}). Please use a different payment method.",
            400,
        )

    try:
        new_balance = gift_card_service.deduct(card, observed_balance, due)
        db.session.commit()
    except ConflictError as exc:
        db.session.rollback()
        raise CheckoutError(str(exc), 409)

    try:
        order = order_service.create_order(
            customer_email=email,
            customer_name=name,
            phone=phone,
            shipping_address=address,
            items=[item.snapshot() for item in quote.items],
            subtotal_pence=quote.subtotal_pence,
            shipping_pence=quote.shipping_pence,
            discount_code=quote.discount.code if quote.discount else None,
            discount_pence=quote.discount_pence,
            gift_card_code=card.code,
            gift_card_pence=due,
            total_pence=0,
            status=OrderStatus.PAID.value,
            payment_method=PaymentMethod.GIFT_CARD.value,
            payment_id=f"GC-{card.id}-{epoch_millis()}",
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Gift card order insert failed; restoring balance of %s", card.code)
        gift_card_service.restore(card, observed_balance)
        raise CheckoutError("Failed to create order", 500)

    try:
        gift_card_service.add_transaction(
            card,
            GiftCardTransactionType.REDEMPTION.value,
            -due,
            new_balance,
            order_id=order.id,
            notes=f"Order {order.order_number}",
            performed_by=email,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to record gift card transaction for order %s", order.order_number)

    if quote.discount:
        discount_service.record_usage(quote.discount.id, customer_email=email, order_id=order.id)

    for item in quote.items:
        order_service.decrement_stock(item.product_id, item.quantity)

    logger.info("Gift card order %s settled from %s", order.order_number, card.code)
    return {
        "success": True,
        "order_number": order.order_number,
        "total": to_major(due),
        "gift_card_used": to_major(due),
        "gift_card_remaining": to_major(new_balance),
        "message": "Order placed successfully using gift card!",
    }


# =============================================================================
# GIFT CARD PURCHASE
# =============================================================================

def create_gift_card_purchase(gateway, data: dict) -> dict:
    """Pending card plus a card processor session; the webhook activates the card."""
    try:
        amount_pence = to_pence(data.get("amount"))
    except ValueError:
        raise ValidationError("Amount must be between £5 and £500")

    purchaser_name = data.get("purchaser_name")
    purchaser_email = data.get("purchaser_email")
    recipient_name = data.get("recipient_name") or None
    recipient_email = data.get("recipient_email") or None

    if not purchaser_name or not purchaser_email:
        raise ValidationError("Purchaser name and email are required")
    error = first_error(
        validate_name(purchaser_name),
        validate_email(purchaser_email),
        validate_name(recipient_name) if recipient_name else validate_name(purchaser_name),
        validate_email(recipient_email) if recipient_email else validate_email(purchaser_email),
    )
    if error:
        raise ValidationError(error)

    message = sanitize_string(data.get("personal_message"), 500) or None
    if message:
        xss = first_error(check_xss(message, "Personal message"))
        if xss:
            raise ValidationError(xss)

    config = current_app.config
    card = gift_card_service.create_pending_purchase(
        amount_pence,
        purchaser_name.strip(),
        purchaser_email,
        recipient_name=recipient_name.strip() if recipient_name else None,
        recipient_email=recipient_email,
        personal_message=message,
        currency=config["CURRENCY"],
    )

    site_url = config["SITE_URL"].rstrip("/")
    payload = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "customer_email": card.purchaser_email,
        "line_items": [
            {
                "price_data": {
                    "currency": config["CURRENCY"].lower(),
                    "product_data": {
                        "name": f"{config['STORE_NAME']} Gift Card - £{format_major(amount_pence)}",
                        "description": f"Gift card for {card.recipient_name}",
                    },
                    "unit_amount": amount_pence,
                },
                "quantity": 1,
            }
        ],
        "success_url": f"{site_url}/gift-card-success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{site_url}/gift-cards.html",
        "metadata": {
            "type": "gift_card_purchase",
            "gift_card_id": str(card.id),
            "gift_card_code": card.code,
            "gift_card_amount": str(amount_pence),
            "recipient_name": card.recipient_name or "",
            "recipient_email": card.recipient_email or "",
        },
    }
    session = gateway.create_card_session(payload)
    logger.info("Gift card %s pending payment (session %s)", card.code, session.get("id"))
    return {"sessionId": session.get("id"), "url": session.get("url")}
