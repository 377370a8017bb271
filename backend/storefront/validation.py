from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level optimistic-lock loss; the client may retry."""


class NotFoundError(LookupError):
    """404-level missing resource."""


class CheckoutError(Exception):
    """Checkout failure carrying the HTTP status the route should answer."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class GatewayError(RuntimeError):
    """A payment processor call failed or answered unexpectedly."""


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a pure validator. Validators never raise."""
    valid: bool
    error: str | None = None

    def __bool__(self) -> bool:
        return self.valid


OK = ValidationResult(True)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(False, message)


# RFC 5322, simplified
EMAIL_REGEX = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
PHONE_REGEX = re.compile(r"^\+?\d{10,14}$")
ORDER_NUMBER_REGEX = re.compile(r"^FS-\d{8}-\d{4}$")
# No 0 O 1 I L
GIFT_CARD_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
GIFT_CARD_CODE_REGEX = re.compile(
    r"^GC-[{0}]{{4}}-[{0}]{{4}}-[{0}]{{4}}$".format(GIFT_CARD_CODE_ALPHABET)
)

MAX_QUANTITY_PER_ITEM = 99
MAX_ITEMS_PER_ORDER = 50
MAX_STRING_LENGTH = 500
MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100
MAX_PHONE_LENGTH = 20
MIN_ITEM_PRICE = 0.01
MAX_ITEM_PRICE = 10000

ADDRESS_REQUIRED_FIELDS = ("line1", "city", "postcode", "country")
ADDRESS_FIELD_LIMITS = {
    "line1": 200,
    "line2": 200,
    "city": 100,
    "county": 100,
    "postcode": 20,
    "country": 100,
}

XSS_PATTERNS = [
    re.compile(r"<\s*/?\s*[a-zA-Z!?][^>]*>"),                  # HTML tag
    re.compile(r"<\s*/?\s*(script|iframe|object|embed|svg|img|style|link|meta)\b", re.I),
    re.compile(r"\b(?:javascript|vbscript)\s*:", re.I),        # script schemes
    re.compile(r"\bdata:\S", re.I),                             # data: URIs
    re.compile(r"\bon\w+\s*=", re.I),                           # event handlers
    re.compile(r"expression\s*\(", re.I),                       # CSS expression(
    re.compile(r"&#"),                                          # numeric entities
    re.compile(r"%3[CE]", re.I),                                # URL-encoded < >
    re.compile(r"\x00"),                                        # null byte
    re.compile(r"<!\[CDATA\[", re.I),
    re.compile(r"style\s*=[^>]*(expression|javascript|behavior)", re.I),
]


def contains_xss(value: Any) -> bool:
    """True when the string carries any known script-injection pattern."""
    if not isinstance(value, str) or not value:
        return False
    return any(pattern.search(value) for pattern in XSS_PATTERNS)


def check_xss(value: Any, field: str = "Input") -> ValidationResult:
    if contains_xss(value):
        return _fail(f"{field} contains invalid characters")
    return OK


def encode_html(value: Any) -> str:
    """Canonical five-character HTML escape."""
    if value is None:
        return ""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#x27;")
    )


def sanitize_string(value: Any, max_length: int = MAX_STRING_LENGTH) -> str:
    """Trim and cap length. Non-strings collapse to ''."""
    if not isinstance(value, str) or not value:
        return ""
    return value.strip()[:max_length]


def validate_email(email: Any) -> ValidationResult:
    if not email or not isinstance(email, str):
        return _fail("Email is required")

    trimmed = email.strip()
    if not trimmed:
        return _fail("Email is required")
    if len(trimmed) > MAX_EMAIL_LENGTH:
        return _fail("Email address is too long")
    if not EMAIL_REGEX.match(trimmed):
        return _fail("Invalid email format")
    return OK


def validate_phone(phone: Any) -> ValidationResult:
    # Optional field
    if phone is None or (isinstance(phone, str) and phone.strip() == ""):
        return OK
    if not isinstance(phone, str):
        return _fail("Invalid phone format")

    trimmed = phone.strip()
    if len(trimmed) > MAX_PHONE_LENGTH:
        return _fail("Phone number is too long")

    normalized = re.sub(r"[\s.\-]", "", trimmed)
    if not PHONE_REGEX.match(normalized):
        return _fail("Invalid phone number format")
    return OK


def validate_name(name: Any) -> ValidationResult:
    if not name or not isinstance(name, str):
        return _fail("Name is required")

    trimmed = name.strip()
    if not trimmed:
        return _fail("Name is required")
    if len(trimmed) > MAX_NAME_LENGTH:
        return _fail("Name is too long")
    if contains_xss(trimmed):
        return _fail("Name contains invalid characters")
    return OK


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value == value  # rejects NaN


def validate_order_items(items: Any) -> ValidationResult:
    if not isinstance(items, list):
        return _fail("Items must be an array")
    if not items:
        return _fail("Order must contain at least one item")
    if len(items) > MAX_ITEMS_PER_ORDER:
        return _fail(f"Order cannot contain more than {MAX_ITEMS_PER_ORDER} items")

    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            return _fail(f"Item {index}: invalid item")

        product_id = item.get("id", item.get("product_id"))
        if not _is_int(product_id) or product_id < 1:
            return _fail(f"Item {index}: product ID is required")

        quantity = item.get("quantity")
        if not _is_int(quantity) or quantity < 1:
            return _fail(f"Item {index}: quantity must be a positive integer")
        if quantity > MAX_QUANTITY_PER_ITEM:
            return _fail(f"Item {index}: quantity cannot exceed {MAX_QUANTITY_PER_ITEM}")

        price = item.get("price")
        if not _is_number(price):
            return _fail(f"Item {index}: price must be a number")
        if price < MIN_ITEM_PRICE or price > MAX_ITEM_PRICE:
            return _fail(f"Item {index}: invalid price")

    return OK


def validate_shipping_address(address: Any) -> ValidationResult:
    if not address or not isinstance(address, dict):
        return _fail("Shipping address is required")

    for field in ADDRESS_REQUIRED_FIELDS:
        value = address.get(field)
        if not isinstance(value, str) or not value.strip():
            return _fail(f"Shipping address: {field} is required")

    for field, max_length in ADDRESS_FIELD_LIMITS.items():
        value = address.get(field)
        if isinstance(value, str) and len(value) > max_length:
            return _fail(f"Shipping address: {field} is too long")

    for field, value in address.items():
        if contains_xss(value):
            return _fail(f"Shipping address: {field} contains invalid characters")

    return OK


def validate_order_number(order_number: Any) -> ValidationResult:
    if not order_number or not isinstance(order_number, str):
        return _fail("Order number is required")
    if not ORDER_NUMBER_REGEX.match(order_number):
        return _fail("Invalid order number format")
    return OK


def validate_gift_card_code(code: Any) -> ValidationResult:
    if not code or not isinstance(code, str):
        return _fail("Gift card code is required")
    if not GIFT_CARD_CODE_REGEX.match(code.strip().upper()):
        return _fail("Invalid gift card code format")
    return OK


def first_error(*results: ValidationResult) -> str | None:
    """Message of the first failing result, in argument order."""
    for result in results:
        if not result.valid:
            return result.error
    return None
