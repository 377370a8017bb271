# Overview: Narrow adapters over the card processor (Stripe) and the wallet processor (PayPal).

"""
Payment processor adapters.

The core depends only on these methods:
- card:   create_card_session, retrieve_card_session, verify_card_webhook
- wallet: wallet_access_token, create_wallet_order, capture_wallet_order,
          get_wallet_order

Adapters live on `app.extensions` under "card_gateway" / "wallet_gateway" so
tests can register in-process fakes. Every return value is a plain dict.
"""

from __future__ import annotations

import logging

import httpx
import stripe
from flask import current_app

from ..validation import GatewayError


logger = logging.getLogger(__name__)

PAYPAL_LIVE_API = "https://api-m.paypal.com"
PAYPAL_SANDBOX_API = "https://api-m.sandbox.paypal.com"


class WebhookSignatureError(ValueError):
    """Webhook payload failed signature verification."""


def _plain(obj):
    """Stripe objects to nested plain dicts."""
    for attr in ("to_dict_recursive", "to_dict"):
        convert = getattr(obj, attr, None)
        if callable(convert):
            return convert()
    return obj


# =============================================================================
# CARD PROCESSOR
# =============================================================================

class StripeCardGateway:
    def __init__(self, secret_key: str | None, webhook_secret: str | None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _require_key(self) -> str:
        if not self.secret_key:
            raise GatewayError("Card processor is not configured")
        return self.secret_key

    def create_card_session(self, payload: dict) -> dict:
        try:
            session = stripe.checkout.Session.create(api_key=self._require_key(), **payload)
        except stripe.StripeError as exc:
            logger.error("Stripe session creation failed: %s", exc)
            raise GatewayError("Card checkout session could not be created") from exc
        return _plain(session)

    def retrieve_card_session(self, session_id: str) -> dict:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._require_key())
        except stripe.StripeError as exc:
            logger.error("Stripe session retrieval failed for %s: %s", session_id, exc)
            raise GatewayError("Card checkout session could not be retrieved") from exc
        return _plain(session)

    def verify_card_webhook(self, payload: bytes, signature: str | None) -> dict:
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        return _plain(event)


# =============================================================================
# WALLET PROCESSOR
# =============================================================================

class PayPalWalletGateway:
    def __init__(self, client_id: str | None, client_secret: str | None, sandbox: bool = True, timeout: float = 10.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_SANDBOX_API if sandbox else PAYPAL_LIVE_API
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout) as client:
                response = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("PayPal request %s %s failed: %s", method, path, exc)
            raise GatewayError("Wallet processor unavailable") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_error:
            logger.error("PayPal %s %s answered %s: %s", method, path, response.status_code, data)
            raise GatewayError(data.get("message") or "Wallet processor request failed")
        return data

    def wallet_access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise GatewayError("Wallet processor is not configured")
        data = self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        token = data.get("access_token")
        if not token:
            raise GatewayError("Wallet processor did not return an access token")
        return token

    def _authorised(self) -> dict:
        return {"Authorization": f"Bearer {self.wallet_access_token()}"}

    def create_wallet_order(self, payload: dict) -> dict:
        return self._request("POST", "/v2/checkout/orders", json=payload, headers=self._authorised())

    def capture_wallet_order(self, order_id: str) -> dict:
        return self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers=self._authorised(),
        )

    def get_wallet_order(self, order_id: str) -> dict:
        return self._request("GET", f"/v2/checkout/orders/{order_id}", headers=self._authorised())


# =============================================================================
# REGISTRY
# =============================================================================

def init_app(app) -> None:
    app.extensions.setdefault(
        "card_gateway",
        StripeCardGateway(app.config.get("STRIPE_SECRET_KEY"), app.config.get("STRIPE_WEBHOOK_SECRET")),
    )
    app.extensions.setdefault(
        "wallet_gateway",
        PayPalWalletGateway(
            app.config.get("PAYPAL_CLIENT_ID"),
            app.config.get("PAYPAL_CLIENT_SECRET"),
            sandbox=app.config.get("PAYPAL_SANDBOX", True),
            timeout=app.config.get("PAYMENT_TIMEOUT_SECONDS", 10.0),
        ),
    )


def card_gateway():
    return current_app.extensions["card_gateway"]


def wallet_gateway():
    return current_app.extensions["wallet_gateway"]
