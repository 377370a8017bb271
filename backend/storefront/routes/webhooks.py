# Overview: Flask API route receiving card processor events; signature check, then the payment finaliser.

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..services import webhook_service
from ..services.payment_gateways import WebhookSignatureError, card_gateway
from ..services.webhook_service import FinaliseError
from ..validation import GatewayError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api")


@webhooks_bp.post("/webhooks")
def card_webhook_route():
    """
    Card processor -> server.

    200: processed, duplicate, or ignored event type
    400: bad content type, bad signature, or a permanent failure
    500: transient failure; the processor retries with backoff
    """
    if request.mimetype != "application/json":
        return jsonify({"error": "Invalid Content-Type. Expected application/json"}), 400

    gateway = card_gateway()
    try:
        event = gateway.verify_card_webhook(request.get_data(), request.headers.get("Stripe-Signature"))
    except WebhookSignatureError as e:
        current_app.logger.warning("Webhook signature verification failed: %s", e)
        return jsonify({"error": "Invalid signature"}), 400

    try:
        result = webhook_service.handle_card_event(gateway, event)
        return jsonify(result), 200
    except FinaliseError as e:
        return jsonify({"error": e.message}), e.status
    except GatewayError as e:
        current_app.logger.error("Webhook could not reach the card processor: %s", e)
        return jsonify({"error": "Webhook handler failed"}), 500
    except (KeyError, TypeError, ValueError):
        current_app.logger.exception("Malformed webhook event %s", event.get("id"))
        return jsonify({"error": "Invalid event payload"}), 400
    except Exception:
        current_app.logger.exception("Webhook handler failed for event %s", event.get("id"))
        return jsonify({"error": "Webhook handler failed"}), 500
