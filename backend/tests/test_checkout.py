"""
Checkout engine tests.

Verifies:
- Catalog prices replace client prices (price authority)
- Discount rules fail in order with specific messages
- Shipping threshold and free-delivery codes
- Display redistribution sums to the amount charged
- Processor payloads carry the metadata the finaliser needs
"""

import json
from datetime import timedelta

import pytest

from conftest import cart
from storefront.services import checkout_service
from storefront.services.checkout_service import Quote, VerifiedItem
from storefront.services.discount_service import AppliedDiscount
from storefront.time_utils import utcnow
from storefront.validation import ValidationError


# =============================================================================
# PRICING
# =============================================================================


class TestPriceCart:

    def test_happy_path_over_threshold(self, db_session, make_product):
        product = make_product(price_pence=1599, stock=10)
        quote = checkout_service.price_cart(cart((product, 2)))
        assert quote.subtotal_pence == 3198
        assert quote.shipping_pence == 0
        assert quote.total_pence == 3198
        assert quote.items[0].unit_pence == 1599

    def test_standard_shipping_below_threshold(self, db_session, make_product):
        product = make_product(price_pence=999)
        quote = checkout_service.price_cart(cart((product, 1)))
        assert quote.shipping_pence == 349
        assert quote.total_pence == 1348

    def test_threshold_applies_after_discount(self, db_session, make_product, make_discount):
        product = make_product(price_pence=2100)
        make_discount(code="FIVER", discount_type="fixed", value="5")
        quote = checkout_service.price_cart(cart((product, 1)), discount_code="fiver")
        assert quote.discount_pence == 500
        assert quote.shipping_pence == 349

    def test_free_delivery_code(self, db_session, make_product, make_discount):
        product = make_product(price_pence=500)
        make_discount(code="SHIPFREE", discount_type="free_delivery", value="0")
        quote = checkout_service.price_cart(cart((product, 1)), discount_code=" shipfree ")
        assert quote.discount_pence == 0
        assert quote.shipping_pence == 0
        assert quote.total_pence == 500

    def test_fixed_discount_capped_at_subtotal(self, db_session, make_product, make_discount):
        product = make_product(price_pence=300)
        make_discount(code="BIG", discount_type="fixed", value="50")
        quote = checkout_service.price_cart(cart((product, 1)), discount_code="BIG")
        assert quote.discount_pence == 300

    def test_percentage_rounds_half_up(self, db_session, make_product, make_discount):
        product = make_product(price_pence=1005)
        make_discount(code="HALF", discount_type="percentage", value="10")
        quote = checkout_service.price_cart(cart((product, 1)), discount_code="HALF")
        assert quote.discount_pence == 101

    def test_inactive_product_rejected(self, db_session, make_product):
        product = make_product(is_active=False)
        with pytest.raises(ValidationError, match=f"Product {product.id} is no longer available"):
            checkout_service.price_cart(cart((product, 1)))

    def test_missing_product_rejected(self, db_session):
        with pytest.raises(ValidationError, match="Product 999 is no longer available"):
            checkout_service.price_cart([{"id": 999, "quantity": 1, "price": 1}])

    def test_stock_counted_across_lines(self, db_session, make_product):
        product = make_product(title="Spinner", stock=3)
        items = [
            {"id": product.id, "quantity": 2, "price": 1, "variation": "Red"},
            {"id": product.id, "quantity": 2, "price": 1, "variation": "Blue"},
        ]
        with pytest.raises(ValidationError, match="Insufficient stock for Spinner. Only 3 available."):
            checkout_service.price_cart(items)

    def test_gift_card_limited_to_order_value(self, db_session, make_product, make_gift_card):
        product = make_product(price_pence=1500)
        make_gift_card(balance_pence=5000)
        quote = checkout_service.price_cart(cart((product, 1)), gift_card_code="gc-abcd-efgh-jkmn")
        assert quote.gift_card_pence == 1849
        assert quote.total_pence == 0

    def test_gift_card_limited_to_requested_amount(self, db_session, make_product, make_gift_card):
        product = make_product(price_pence=3000)
        make_gift_card(balance_pence=5000)
        quote = checkout_service.price_cart(
            cart((product, 1)), gift_card_code="GC-ABCD-EFGH-JKMN", gift_card_amount=12.5
        )
        assert quote.gift_card_pence == 1250
        assert quote.total_pence == 1750


class TestDiscountRules:

    @pytest.fixture
    def product(self, make_product):
        return make_product(price_pence=2500)

    def _price(self, product, code, email=None):
        return checkout_service.price_cart(cart((product, 1)), discount_code=code, customer_email=email)

    def test_unknown_code(self, db_session, product):
        with pytest.raises(ValidationError, match="Invalid discount code"):
            self._price(product, "NOPE")

    def test_inactive(self, db_session, product, make_discount):
        make_discount(code="OFF", is_active=False)
        with pytest.raises(ValidationError, match="no longer active"):
            self._price(product, "OFF")

    def test_not_yet_active(self, db_session, product, make_discount):
        make_discount(code="SOON", starts_at=utcnow() + timedelta(days=1))
        with pytest.raises(ValidationError, match="This discount code is not yet active"):
            self._price(product, "SOON")

    def test_expired(self, db_session, product, make_discount):
        make_discount(code="OLD", expires_at=utcnow() - timedelta(seconds=1))
        with pytest.raises(ValidationError, match="This discount code has expired"):
            self._price(product, "OLD")

    def test_global_limit(self, db_session, product, make_discount):
        make_discount(code="LIMITED", max_uses=3, use_count=3)
        with pytest.raises(ValidationError, match="reached its usage limit"):
            self._price(product, "LIMITED")

    def test_per_customer_limit(self, db_session, product, make_discount):
        from storefront.services import discount_service

        discount = make_discount(code="ONCE", max_uses_per_customer=1)
        discount_service.record_usage(discount.id, customer_email="Buyer@Example.com")

        with pytest.raises(ValidationError, match="maximum number of times"):
            self._price(product, "ONCE", email="buyer@example.com")
        assert self._price(product, "ONCE", email="other@example.com").discount_pence == 250

    def test_minimum_order(self, db_session, product, make_discount):
        make_discount(code="BIGSPEND", min_order_pence=3000)
        with pytest.raises(ValidationError, match=r"requires a minimum order of £30.00"):
            self._price(product, "BIGSPEND")

    def test_window_checked_before_limits(self, db_session, product, make_discount):
        make_discount(code="BOTH", expires_at=utcnow() - timedelta(days=1), max_uses=1, use_count=1)
        with pytest.raises(ValidationError, match="has expired"):
            self._price(product, "BOTH")


# =============================================================================
# REDISTRIBUTION
# =============================================================================


def _quote(lines, subtotal=None, shipping=0, discount_pence=0, gift_card_pence=0):
    items = [VerifiedItem(i + 1, f"Item {i + 1}", unit, qty) for i, (unit, qty) in enumerate(lines)]
    subtotal = subtotal if subtotal is not None else sum(unit * qty for unit, qty in lines)
    quote = Quote(items=items, subtotal_pence=subtotal, shipping_pence=shipping)
    if discount_pence:
        quote.discount = AppliedDiscount(1, "CODE", "fixed", 0, discount_pence)
    if gift_card_pence:
        quote.gift_card = type("GC", (), {"applicable_pence": gift_card_pence})()
    return quote


class TestRedistribute:

    def _charged(self, lines, shipping):
        return sum(line.unit_pence * line.quantity for line in lines) + shipping

    def test_no_deductions_leaves_prices(self):
        lines, shipping = checkout_service.redistribute(_quote([(1599, 2)]))
        assert [(l.unit_pence, l.quantity) for l in lines] == [(1599, 2)]
        assert shipping == 0

    def test_discount_and_gift_card_scale_items(self):
        quote = _quote([(2500, 2)], discount_pence=500, gift_card_pence=2000)
        lines, shipping = checkout_service.redistribute(quote)
        assert quote.total_pence == 2500
        assert [(l.unit_pence, l.quantity) for l in lines] == [(1250, 2)]
        assert shipping == 0

    def test_gift_card_reduces_shipping_proportionally(self):
        quote = _quote([(1500, 1)], shipping=349, gift_card_pence=1000)
        lines, shipping = checkout_service.redistribute(quote)
        assert shipping == 160
        assert self._charged(lines, shipping) == quote.total_pence == 849

    @pytest.mark.parametrize(
        "lines,discount,gift_card,shipping",
        [
            ([(1599, 1), (349, 3)], 500, 1000, 0),
            ([(333, 3)], 100, 0, 349),
            ([(999, 7), (1, 1)], 0, 777, 349),
            ([(1234, 5)], 617, 2000, 0),
        ],
    )
    def test_lines_sum_to_total(self, lines, discount, gift_card, shipping):
        quote = _quote(lines, shipping=shipping, discount_pence=discount, gift_card_pence=gift_card)
        display, display_shipping = checkout_service.redistribute(quote)
        assert self._charged(display, display_shipping) == quote.total_pence
        assert all(line.unit_pence >= 0 for line in display)

    def test_residual_splits_one_unit(self):
        quote = _quote([(333, 3)], discount_pence=100)
        display, _ = checkout_service.redistribute(quote)
        assert sum(line.quantity for line in display) == 3
        assert len({line.unit_pence for line in display}) <= 2


# =============================================================================
# CARD CHECKOUT ENDPOINT
# =============================================================================


class TestStripeCheckoutRoute:

    def test_session_uses_catalog_prices(self, client, card_gateway, make_product):
        product = make_product(price_pence=1599, stock=10)
        resp = client.post("/api/stripe-checkout", json={"items": cart((product, 2))})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["sessionId"].startswith("cs_test_")

        payload = card_gateway.payloads[0]
        assert payload["line_items"] == [{
            "price_data": {"currency": "gbp", "product_data": {"name": "Fidget Cube"}, "unit_amount": 1599},
            "quantity": 2,
        }]
        assert "shipping_options" not in payload
        assert json.loads(payload["metadata"]["items"]) == [{"id": product.id, "q": 2, "p": 1599}]

    def test_shipping_option_below_threshold(self, client, card_gateway, make_product):
        product = make_product(price_pence=999)
        client.post("/api/stripe-checkout", json={"items": cart((product, 1))})
        option = card_gateway.payloads[0]["shipping_options"][0]["shipping_rate_data"]
        assert option["fixed_amount"]["amount"] == 349

    def test_metadata_records_tenders(self, client, card_gateway, make_product, make_discount, make_gift_card):
        product = make_product(price_pence=2500)
        make_discount(code="SAVE10")
        card = make_gift_card(balance_pence=2000)
        resp = client.post("/api/stripe-checkout", json={
            "items": cart((product, 2)),
            "discountCode": "save10",
            "giftCardCode": card.code,
        })
        assert resp.status_code == 200
        metadata = card_gateway.payloads[0]["metadata"]
        assert metadata["discount_code"] == "SAVE10"
        assert metadata["discount_amount"] == "500"
        assert metadata["gift_card_id"] == str(card.id)
        assert metadata["gift_card_amount"] == "2000"
        assert card_gateway.charged_pence("cs_test_1") == 2500

    def test_expired_discount_is_400(self, client, card_gateway, make_product, make_discount):
        product = make_product()
        make_discount(code="OLD", expires_at=utcnow() - timedelta(days=1))
        resp = client.post("/api/stripe-checkout", json={"items": cart((product, 1)), "discountCode": "OLD"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "This discount code has expired"

    def test_fully_covered_order_is_redirected_to_gift_card_checkout(
        self, client, card_gateway, make_product, make_gift_card
    ):
        product = make_product(price_pence=1000)
        card = make_gift_card(balance_pence=5000)
        resp = client.post("/api/stripe-checkout", json={"items": cart((product, 1)), "giftCardCode": card.code})
        assert resp.status_code == 400
        assert "gift card checkout" in resp.get_json()["error"]
        assert card_gateway.payloads == []

    def test_invalid_cart_is_400(self, client, card_gateway):
        resp = client.post("/api/stripe-checkout", json={"items": []})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Order must contain at least one item"

    @pytest.mark.parametrize("field,message", [
        ("discountCode", "Invalid discount code"),
        ("giftCardCode", "Invalid gift card code"),
    ])
    def test_non_string_codes_are_400(self, client, card_gateway, make_product, field, message):
        product = make_product()
        resp = client.post("/api/stripe-checkout", json={"items": cart((product, 1)), field: 123})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message
        assert card_gateway.payloads == []

    def test_blank_codes_are_ignored(self, client, card_gateway, make_product):
        product = make_product()
        resp = client.post("/api/stripe-checkout", json={
            "items": cart((product, 1)), "discountCode": "   ", "giftCardCode": " ",
        })
        assert resp.status_code == 200
        assert "discount_code" not in card_gateway.payloads[0]["metadata"]


class TestPayPalCheckoutRoute:

    def test_wallet_order_breakdown(self, client, wallet_gateway, make_product, make_discount, make_gift_card):
        product = make_product(price_pence=1500)
        make_discount(code="FIVER", discount_type="fixed", value="5")
        card = make_gift_card(balance_pence=300)
        resp = client.post("/api/paypal-checkout", json={
            "items": cart((product, 2)),
            "discountCode": "FIVER",
            "giftCardCode": card.code,
        })
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["orderID"] == "WALLET-1"
        assert body["url"].endswith("/approve/WALLET-1")

        unit = wallet_gateway.orders["WALLET-1"]["purchase_units"][0]
        assert unit["amount"]["value"] == "22.00"
        assert unit["amount"]["breakdown"]["item_total"]["value"] == "30.00"
        assert unit["amount"]["breakdown"]["discount"]["value"] == "8.00"
        assert unit["amount"]["breakdown"]["shipping"]["value"] == "0.00"
        assert unit["items"][0]["sku"] == str(product.id)
        assert json.loads(unit["custom_id"]) == {"s": 0, "d": "FIVER", "da": 500, "g": card.id, "ga": 300}


# =============================================================================
# PRE-VALIDATION ENDPOINTS
# =============================================================================


class TestValidateDiscountRoute:

    def test_percentage(self, client, make_discount):
        make_discount(code="SAVE10", value="10")
        resp = client.post("/api/validate-discount", json={"code": "save10", "subtotal": 40})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["valid"] is True
        assert body["discount_amount"] == 4.0
        assert body["message"] == "10% off applied!"

    def test_fixed_and_free_delivery_messages(self, client, make_discount):
        make_discount(code="FIVER", discount_type="fixed", value="5")
        make_discount(code="SHIP", discount_type="free_delivery", value="0")
        fixed = client.post("/api/validate-discount", json={"code": "FIVER", "subtotal": 40}).get_json()
        free = client.post("/api/validate-discount", json={"code": "SHIP", "subtotal": 40}).get_json()
        assert fixed["message"] == "£5.00 off applied!"
        assert free["message"] == "Free delivery applied!"

    def test_minimum_order_message(self, client, make_discount):
        make_discount(code="BIG", min_order_pence=5000)
        resp = client.post("/api/validate-discount", json={"code": "BIG", "subtotal": 10})
        assert resp.status_code == 400
        assert resp.get_json() == {
            "valid": False,
            "error": "This discount code requires a minimum order of £50.00",
        }


class TestGiftCardEndpoints:

    def test_validate_gift_card(self, client, make_gift_card):
        make_gift_card(balance_pence=2000)
        resp = client.post("/api/validate-gift-card", json={"code": "GC-ABCD-EFGH-JKMN", "subtotal": 15})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["balance"] == 20.0
        assert body["applicable_amount"] == 15.0
        assert body["remaining_after_use"] == 5.0
        assert body["covers_full_order"] is True

    @pytest.mark.parametrize(
        "status,message",
        [
            ("pending", "This gift card has not been activated yet"),
            ("depleted", "This gift card has no remaining balance"),
            ("cancelled", "This gift card has been cancelled"),
        ],
    )
    def test_validate_status_messages(self, client, make_gift_card, status, message):
        make_gift_card(status=status, balance_pence=0 if status == "depleted" else 1000)
        resp = client.post("/api/validate-gift-card", json={"code": "GC-ABCD-EFGH-JKMN", "subtotal": 10})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == message

    def test_validate_expires_in_place(self, client, db_session, make_gift_card):
        card = make_gift_card(expires_at=utcnow() - timedelta(minutes=1))
        resp = client.post("/api/validate-gift-card", json={"code": card.code, "subtotal": 10})
        assert resp.get_json()["error"] == "This gift card has expired"
        db_session.expire_all()
        assert card.status == "expired"

    def test_check_gift_card_format(self, client):
        resp = client.post("/api/check-gift-card", json={"code": "GC-1234"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid gift card code format"

    def test_check_gift_card_unknown(self, client):
        resp = client.post("/api/check-gift-card", json={"code": "GC-AAAA-BBBB-CCCC"})
        assert resp.status_code == 404

    def test_check_gift_card_pending(self, client, make_gift_card):
        make_gift_card(status="pending")
        resp = client.post("/api/check-gift-card", json={"code": "GC-ABCD-EFGH-JKMN"})
        assert resp.status_code == 400
        assert "not been activated yet" in resp.get_json()["error"]

    def test_check_gift_card_forfeits_expired_balance(self, client, db_session, make_gift_card):
        card = make_gift_card(balance_pence=1200, expires_at=utcnow() - timedelta(days=1))
        resp = client.post("/api/check-gift-card", json={"code": card.code.lower()})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["giftCard"]["status"] == "expired"
        assert body["giftCard"]["current_balance"] == 0.0
        assert body["transactions"][0]["type"] == "expiration"
        assert body["transactions"][0]["amount"] == -12.0
        assert body["transactions"][0]["notes"] == "Gift card expired - balance forfeited"

    def test_repeated_bad_lookups_raise_alert(self, client, db_session):
        from storefront.models import AuditLog

        for suffix in "ABCDEFGHJK":
            client.post("/api/check-gift-card", json={"code": f"GC-AAAA-BBBB-CC{suffix}{suffix}"})
        alerts = db_session.query(AuditLog).filter_by(action="security_alert_gift_card_enumeration").count()
        assert alerts >= 1


class TestGiftCardPurchase:

    def test_amount_bounds(self, client, card_gateway):
        resp = client.post("/api/gift-card-checkout", json={
            "amount": 4.99, "purchaser_name": "Pat", "purchaser_email": "pat@example.com",
        })
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Amount must be between £5 and £500"

    def test_creates_pending_card_and_session(self, client, db_session, card_gateway):
        from storefront.models import GiftCard

        resp = client.post("/api/gift-card-checkout", json={
            "amount": 25,
            "purchaser_name": "Pat Giver",
            "purchaser_email": "Pat@Example.com",
            "recipient_name": "Sam",
            "personal_message": "Happy birthday!",
        })
        assert resp.status_code == 200

        card = db_session.query(GiftCard).one()
        assert card.status == "pending"
        assert card.current_balance_pence == 2500
        assert card.recipient_email == "pat@example.com"
        assert card.expires_at > utcnow() + timedelta(days=364)

        payload = card_gateway.payloads[0]
        assert payload["metadata"]["type"] == "gift_card_purchase"
        assert payload["metadata"]["gift_card_id"] == str(card.id)
        assert payload["line_items"][0]["price_data"]["product_data"]["name"] == "Test Store Gift Card - £25.00"

    def test_generated_codes_avoid_confusable_characters(self):
        from storefront.services.gift_card_service import generate_code
        from storefront.validation import GIFT_CARD_CODE_REGEX

        for _ in range(200):
            code = generate_code()
            assert GIFT_CARD_CODE_REGEX.match(code)
            assert not set(code[3:].replace("-", "")) & set("0O1IL")

    def test_generated_codes_use_only_alphabet(self, monkeypatch):
        from storefront.services import gift_card_service

        # 248 and above sit outside the largest multiple of 31 and must be skipped
        streams = iter([bytes([255, 248, 0, 30, 247, 31, 62, 93, 124, 155, 186, 217]), bytes(range(12))])
        monkeypatch.setattr(gift_card_service.secrets, "token_bytes", lambda n: next(streams))

        code = gift_card_service.generate_code()
        alphabet = gift_card_service.CODE_ALPHABET
        assert code == "GC-A99A-AAAA-AAAB"
        assert set(code[3:].replace("-", "")) <= set(alphabet)

    def test_code_format_rejects_confusable_characters(self):
        from storefront.validation import validate_gift_card_code

        assert validate_gift_card_code("GC-ABCD-EFGH-JKMN").valid
        assert not validate_gift_card_code("GC-ABCD-EFGH-JKM0").valid
        assert not validate_gift_card_code("GC-OBCD-EFGH-JKMN").valid
