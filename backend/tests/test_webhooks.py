"""
Payment finaliser tests.

Verifies:
- Webhook admission (content type, signature)
- One paid order per payment_id, however often the event is delivered
- Side effects: stock, gift-card balance and ledger, discount usage
- Stock never goes negative, and a lost stock CAS still applies the decrement
- Amount mismatches are flagged, not rejected
- Gift card purchases are activated by the same webhook
- Wallet capture goes through the same finaliser
"""

import json

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import VALID_SIGNATURE, cart
from storefront.models import AuditLog, DiscountCode, DiscountUsage, GiftCard, GiftCardTransaction, Order
from storefront.services import order_service


def _event(session_id, event_type="checkout.session.completed"):
    return {"id": f"evt_{session_id}", "type": event_type, "data": {"object": {"id": session_id}}}


def _deliver(client, event, signature=VALID_SIGNATURE):
    return client.post(
        "/api/webhooks",
        data=json.dumps(event),
        content_type="application/json",
        headers={"Stripe-Signature": signature},
    )


def _paid_session(client, card_gateway, body, **complete_kwargs):
    resp = client.post("/api/stripe-checkout", json=body)
    assert resp.status_code == 200, resp.get_json()
    session_id = resp.get_json()["sessionId"]
    card_gateway.complete(session_id, **complete_kwargs)
    return session_id


# =============================================================================
# ADMISSION
# =============================================================================


class TestWebhookAdmission:

    def test_rejects_non_json(self, client, card_gateway):
        resp = client.post("/api/webhooks", data="{}", content_type="text/plain",
                           headers={"Stripe-Signature": VALID_SIGNATURE})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid Content-Type. Expected application/json"

    def test_rejects_bad_signature(self, client, card_gateway):
        resp = _deliver(client, _event("cs_test_1"), signature="t=1,v1=forged")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid signature"

    def test_unknown_event_acknowledged(self, client, card_gateway):
        resp = _deliver(client, {"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
        assert resp.status_code == 200
        assert resp.get_json() == {"received": True}

    def test_payment_failed_acknowledged(self, client, db_session, card_gateway):
        event = {
            "id": "evt_f",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_1", "last_payment_error": {"message": "Card declined"}}},
        }
        resp = _deliver(client, event)
        assert resp.status_code == 200
        assert db_session.query(Order).count() == 0


# =============================================================================
# ORDER CREATION
# =============================================================================


class TestCardFinalisation:

    def test_happy_path_and_duplicate(self, client, db_session, card_gateway, make_product):
        product = make_product(price_pence=1599, stock=10)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 2))})

        resp = _deliver(client, _event(session_id))
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["duplicate"] is False

        db_session.expire_all()
        order = db_session.query(Order).one()
        assert order.order_number == body["order_number"]
        assert order.status == "paid"
        assert order.payment_method == "card"
        assert order.payment_id == f"pi_{session_id}"
        assert order.total_pence == 3198
        assert order.notes is None
        assert order.items == [{
            "id": product.id, "title": "Fidget Cube", "price": 15.99, "price_pence": 1599, "quantity": 2,
        }]
        assert product.stock == 8

        again = _deliver(client, _event(session_id))
        assert again.status_code == 200
        assert again.get_json()["duplicate"] is True
        db_session.expire_all()
        assert db_session.query(Order).count() == 1
        assert product.stock == 8

    def test_shipping_address_stored_encrypted(self, client, db_session, card_gateway, make_product):
        product = make_product(price_pence=999)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})
        _deliver(client, _event(session_id))

        order = db_session.query(Order).one()
        assert "Leeds" not in (order.shipping_address or "")
        detail = order_service.admin_dict(order)
        assert detail["shipping_address"]["city"] == "Leeds"
        assert detail["phone"] == "+447700900123"
        assert order.shipping_pence == 349
        assert order.total_pence == 1348

    def test_discount_and_gift_card(self, client, db_session, card_gateway, make_product, make_discount,
                                    make_gift_card):
        product = make_product(price_pence=2500)
        make_discount(code="SAVE10")
        card = make_gift_card(balance_pence=2000)
        session_id = _paid_session(client, card_gateway, {
            "items": cart((product, 2)), "discountCode": "SAVE10", "giftCardCode": card.code,
        })
        assert card_gateway.sessions[session_id]["amount_total"] == 2500

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 200

        db_session.expire_all()
        order = db_session.query(Order).one()
        assert order.subtotal_pence == 5000
        assert order.discount_code == "SAVE10"
        assert order.discount_pence == 500
        assert order.gift_card_pence == 2000
        assert order.total_pence == 2500
        assert order.notes is None

        assert card.current_balance_pence == 0
        assert card.status == "depleted"
        ledger = db_session.query(GiftCardTransaction).filter_by(gift_card_id=card.id).one()
        assert ledger.amount_pence == -2000
        assert ledger.order_id == order.id

        assert db_session.query(DiscountCode).filter_by(code="SAVE10").one().use_count == 1
        usage = db_session.query(DiscountUsage).one()
        assert usage.customer_email == "buyer@example.com"
        assert usage.order_id == order.id

    def test_gift_card_spent_elsewhere_still_creates_order(self, client, db_session, card_gateway,
                                                           make_product, make_gift_card):
        product = make_product(price_pence=2500)
        card = make_gift_card(balance_pence=1000)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1)), "giftCardCode": card.code})

        db_session.query(GiftCard).filter(GiftCard.id == card.id).update(
            {GiftCard.current_balance_pence: 200}, synchronize_session=False
        )
        db_session.commit()

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 200
        db_session.expire_all()
        assert db_session.query(Order).count() == 1
        assert card.current_balance_pence == 200

    def test_amount_mismatch_is_flagged(self, client, db_session, card_gateway, make_product):
        product = make_product(price_pence=1599)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 2))}, amount_total=100)

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 200
        order = db_session.query(Order).one()
        assert order.total_pence == 3198
        assert order.notes == "[REVIEW] AMOUNT MISMATCH: expected £31.98, received £1.00"

    def test_rounding_within_tolerance_is_not_flagged(self, client, db_session, card_gateway, make_product):
        product = make_product(price_pence=1599)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 2))}, amount_total=3196)
        _deliver(client, _event(session_id))
        assert db_session.query(Order).one().notes is None

    def test_repeated_mismatches_raise_alert(self, client, db_session, card_gateway, make_product):
        product = make_product(price_pence=1599, stock=50)
        for _ in range(3):
            session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))}, amount_total=1)
            _deliver(client, _event(session_id))

        alerts = db_session.query(AuditLog).filter_by(action="security_alert_amount_manipulation").all()
        assert len(alerts) == 1
        assert alerts[0].details["severity"] == "critical"

    def test_unpaid_session_ignored(self, client, db_session, card_gateway, make_product):
        product = make_product()
        resp = client.post("/api/stripe-checkout", json={"items": cart((product, 1))})
        session_id = resp.get_json()["sessionId"]

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 200
        assert db_session.query(Order).count() == 0

    def test_unreadable_metadata_is_permanent(self, client, db_session, card_gateway, make_product):
        product = make_product()
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})
        card_gateway.sessions[session_id]["metadata"]["items"] = "not json"

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 400
        assert db_session.query(Order).count() == 0

    def test_transient_insert_failure_is_500(self, client, db_session, card_gateway, make_product, monkeypatch):
        product = make_product()
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})

        def failing_create_order(**kwargs):
            raise OperationalError("INSERT INTO orders", {}, Exception("server closed the connection"))

        monkeypatch.setattr(order_service, "create_order", failing_create_order)
        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Order creation failed"

    def test_other_constraint_failure_is_400(self, client, db_session, card_gateway, make_product, monkeypatch):
        product = make_product()
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})

        def failing_create_order(**kwargs):
            raise IntegrityError(
                "INSERT INTO orders", {}, Exception("NOT NULL constraint failed: orders.customer_email")
            )

        monkeypatch.setattr(order_service, "create_order", failing_create_order)
        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Order creation failed permanently"
        assert db_session.query(Order).count() == 0

    @pytest.mark.parametrize("code", ["23514", "23502", "22P02"])
    def test_permanent_sqlstate_is_400(self, client, card_gateway, make_product, monkeypatch, code):
        product = make_product()
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})

        class DriverError(Exception):
            pgcode = code

        def failing_create_order(**kwargs):
            raise OperationalError("INSERT INTO orders", {}, DriverError("rejected"))

        monkeypatch.setattr(order_service, "create_order", failing_create_order)
        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 400

    def test_concurrent_delivery_resolved_by_unique_constraint(
        self, client, db_session, card_gateway, make_product, monkeypatch
    ):
        """Both deliveries pass the lookup; the second loses on the payment_id constraint."""
        product = make_product(stock=10)
        session_id = _paid_session(client, card_gateway, {"items": cart((product, 1))})
        assert _deliver(client, _event(session_id)).status_code == 200

        real_lookup = order_service.get_by_payment_id
        calls = []

        def stale_first_lookup(payment_id):
            calls.append(payment_id)
            return None if len(calls) == 1 else real_lookup(payment_id)

        monkeypatch.setattr(order_service, "get_by_payment_id", stale_first_lookup)
        resp = _deliver(client, _event(session_id))

        assert resp.status_code == 200
        assert resp.get_json()["duplicate"] is True
        db_session.expire_all()
        assert db_session.query(Order).count() == 1
        assert product.stock == 9


# =============================================================================
# STOCK
# =============================================================================


class TestStockDecrement:

    def test_clamps_at_zero(self, db_session, make_product):
        product = make_product(stock=2)
        assert order_service.decrement_stock(product.id, 5) is True
        db_session.expire_all()
        assert product.stock == 0

    @pytest.mark.parametrize("stock,quantity,expected", [(10, 3, 7), (2, 5, 0)])
    def test_conflict_falls_back_to_plain_update(self, db_session, make_product, monkeypatch, caplog,
                                                  stock, quantity, expected):
        product = make_product(stock=stock)
        monkeypatch.setattr(order_service, "compare_and_swap", lambda *args, **kwargs: False)

        assert order_service.decrement_stock(product.id, quantity) is False
        db_session.expire_all()
        assert product.stock == expected
        assert any(
            record.levelname == "CRITICAL" and "Stock update conflict" in record.getMessage()
            for record in caplog.records
        )

    def test_missing_product(self, db_session):
        assert order_service.decrement_stock(9999, 1) is False


# =============================================================================
# GIFT CARD PURCHASE
# =============================================================================


class TestGiftCardActivation:

    def test_purchase_webhook_activates_card(self, client, db_session, card_gateway):
        resp = client.post("/api/gift-card-checkout", json={
            "amount": 25, "purchaser_name": "Pat Giver", "purchaser_email": "pat@example.com",
        })
        session_id = resp.get_json()["sessionId"]
        card_gateway.complete(session_id)

        resp = _deliver(client, _event(session_id))
        assert resp.status_code == 200
        assert resp.get_json()["activated"] is True

        db_session.expire_all()
        card = db_session.query(GiftCard).one()
        assert card.status == "active"
        assert card.activated_at is not None
        assert card.payment_id == f"pi_{session_id}"

        ledger = db_session.query(GiftCardTransaction).filter_by(gift_card_id=card.id).one()
        assert ledger.transaction_type == "activation"
        assert ledger.amount_pence == 2500
        assert ledger.notes == f"Payment confirmed - Stripe Session: {session_id}"
        assert db_session.query(AuditLog).filter_by(action="gift_card_activated").count() == 1
        assert db_session.query(Order).count() == 0

        again = _deliver(client, _event(session_id))
        assert again.get_json()["activated"] is False
        assert db_session.query(GiftCardTransaction).count() == 1


# =============================================================================
# WALLET CAPTURE
# =============================================================================


class TestWalletCapture:

    def test_capture_creates_order(self, client, db_session, wallet_gateway, make_product, make_gift_card):
        product = make_product(price_pence=1500, stock=4)
        card = make_gift_card(balance_pence=300)
        resp = client.post("/api/paypal-checkout", json={"items": cart((product, 2)), "giftCardCode": card.code})
        order_id = resp.get_json()["orderID"]

        resp = client.post("/api/paypal-capture", json={"orderID": order_id})
        body = resp.get_json()
        assert resp.status_code == 200, body
        assert body["success"] is True
        assert body["total"] == 27.0

        db_session.expire_all()
        order = db_session.query(Order).one()
        assert order.order_number == body["order_number"]
        assert order.payment_method == "wallet"
        assert order.payment_id == f"CAPTURE-{order_id}"
        assert order.customer_email == "payer@example.com"
        assert order.customer_name == "Pat Payer"
        assert order.gift_card_pence == 300
        assert order.notes is None
        assert order_service.admin_dict(order)["shipping_address"]["city"] == "York"

        assert product.stock == 2
        assert card.current_balance_pence == 0

    def test_customer_override(self, client, db_session, wallet_gateway, make_product):
        product = make_product(price_pence=2500)
        order_id = client.post("/api/paypal-checkout", json={"items": cart((product, 1))}).get_json()["orderID"]

        resp = client.post("/api/paypal-capture", json={
            "orderID": order_id,
            "customer": {"email": "Other@Example.com", "name": "Alex Other", "phone": "+447700900999"},
        })
        assert resp.status_code == 200
        order = db_session.query(Order).one()
        assert order.customer_email == "other@example.com"
        assert order.customer_name == "Alex Other"

    def test_order_id_required(self, client, wallet_gateway):
        resp = client.post("/api/paypal-capture", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Order ID is required"

    def test_incomplete_capture(self, client, db_session, wallet_gateway, make_product, monkeypatch):
        product = make_product(price_pence=2500)
        order_id = client.post("/api/paypal-checkout", json={"items": cart((product, 1))}).get_json()["orderID"]
        monkeypatch.setattr(wallet_gateway, "capture_wallet_order", lambda oid: {"id": oid, "status": "PENDING"})

        resp = client.post("/api/paypal-capture", json={"orderID": order_id})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Payment not completed"
        assert db_session.query(Order).count() == 0
