# Overview: Flask API routes for checkout; card and wallet sessions, gift-card settlement, and code pre-validation.

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from ..money import to_pence
from ..services import audit_service, checkout_service, discount_service, gift_card_service, webhook_service
from ..services.audit_service import AuditAction
from ..services.payment_gateways import card_gateway, wallet_gateway
from ..validation import CheckoutError, GatewayError, NotFoundError, ValidationError, validate_gift_card_code


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


def _subtotal_pence(data: dict) -> int:
    try:
        return max(0, to_pence(data.get("subtotal", 0) or 0))
    except ValueError:
        raise ValidationError("Invalid subtotal")


def _record_failed_gift_card_check(code: str | None, reason: str) -> None:
    ip_address = audit_service.client_ip(request)
    audit_service.log_request_event(
        request,
        AuditAction.GIFT_CARD_CHECK_FAILED,
        resource_type="gift_card",
        details={"code": (code or "")[:32], "reason": reason},
    )
    audit_service.check_gift_card_anomaly(ip_address, code)


# =============================================================================
# PROCESSOR CHECKOUT
# =============================================================================

@checkout_bp.post("/stripe-checkout")
def stripe_checkout_route():
    """Create a card processor session for a verified cart."""
    try:
        data = request.get_json(silent=True) or {}
        result = checkout_service.create_card_checkout(card_gateway(), data)
        return jsonify(result), 200
    except (ValidationError, CheckoutError) as e:
        return jsonify({"error": getattr(e, "message", str(e))}), getattr(e, "status", 400)
    except GatewayError as e:
        current_app.logger.error("Card checkout failed: %s", e)
        return jsonify({"error": "Payment service unavailable. Please try again."}), 500
    except Exception:
        current_app.logger.exception("Card checkout failed")
        return jsonify({"error": "Failed to create checkout session"}), 500


@checkout_bp.post("/paypal-checkout")
def paypal_checkout_route():
    """Create a wallet order for a verified cart."""
    try:
        data = request.get_json(silent=True) or {}
        result = checkout_service.create_wallet_checkout(wallet_gateway(), data)
        return jsonify(result), 200
    except (ValidationError, CheckoutError) as e:
        return jsonify({"error": getattr(e, "message", str(e))}), getattr(e, "status", 400)
    except GatewayError as e:
        current_app.logger.error("Wallet checkout failed: %s", e)
        return jsonify({"error": "Payment service unavailable. Please try again."}), 500
    except Exception:
        current_app.logger.exception("Wallet checkout failed")
        return jsonify({"error": "Failed to create PayPal order"}), 500


@checkout_bp.post("/paypal-capture")
def paypal_capture_route():
    """Capture an approved wallet order and create the paid order."""
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("orderID") or data.get("order_id")
        if not order_id or not isinstance(order_id, str):
            return jsonify({"error": "Order ID is required"}), 400

        result = webhook_service.capture_wallet_payment(wallet_gateway(), order_id, data.get("customer"))
        return jsonify(result), 200
    except CheckoutError as e:
        return jsonify({"error": e.message}), e.status
    except GatewayError as e:
        current_app.logger.error("Wallet capture failed: %s", e)
        return jsonify({"error": "Failed to capture payment"}), 500
    except Exception:
        current_app.logger.exception("Wallet capture failed")
        return jsonify({"error": "Failed to capture payment"}), 500


# =============================================================================
# GIFT CARDS
# =============================================================================

@checkout_bp.post("/gift-card-only-checkout")
def gift_card_only_checkout_route():
    """Settle an order entirely from a gift card balance."""
    try:
        data = request.get_json(silent=True) or {}
        result = checkout_service.gift_card_only_checkout(data)
        return jsonify(result), 200
    except CheckoutError as e:
        return jsonify({"error": e.message}), e.status
    except SQLAlchemyError:
        current_app.logger.exception("Gift card checkout database failure")
        return jsonify({"error": "Failed to process order"}), 500
    except Exception:
        current_app.logger.exception("Gift card checkout failed")
        return jsonify({"error": "Failed to process order"}), 500


@checkout_bp.post("/gift-card-checkout")
def gift_card_purchase_route():
    """Buy a gift card: pending card plus a card processor session."""
    try:
        data = request.get_json(silent=True) or {}
        result = checkout_service.create_gift_card_purchase(card_gateway(), data)
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except GatewayError as e:
        current_app.logger.error("Gift card purchase session failed: %s", e)
        return jsonify({"error": "Payment service unavailable. Please try again."}), 500
    except Exception:
        current_app.logger.exception("Gift card purchase failed")
        return jsonify({"error": "Failed to create checkout session"}), 500


@checkout_bp.post("/validate-gift-card")
def validate_gift_card_route():
    try:
        data = request.get_json(silent=True) or {}
        code = data.get("code")
        if not code or not isinstance(code, str):
            return jsonify({"valid": False, "error": "Gift card code is required"}), 400

        result = gift_card_service.validate_for_checkout(code, _subtotal_pence(data))
        return jsonify(result), 200
    except ValidationError as e:
        _record_failed_gift_card_check(data.get("code"), str(e))
        return jsonify({"valid": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Gift card validation failed")
        return jsonify({"valid": False, "error": "Failed to validate gift card"}), 500


@checkout_bp.post("/check-gift-card")
def check_gift_card_route():
    """Public balance and history lookup."""
    try:
        data = request.get_json(silent=True) or {}
        code = data.get("code")
        result = validate_gift_card_code(code)
        if not result:
            _record_failed_gift_card_check(code if isinstance(code, str) else None, "invalid format")
            return jsonify({"error": result.error}), 400

        card, transactions = gift_card_service.check_balance(code)
        return jsonify({
            "giftCard": card.to_dict(),
            "transactions": [t.to_dict() for t in transactions],
        }), 200
    except NotFoundError as e:
        _record_failed_gift_card_check(data.get("code"), "not found")
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Gift card balance check failed")
        return jsonify({"error": "Failed to check gift card"}), 500


# =============================================================================
# DISCOUNTS
# =============================================================================

@checkout_bp.post("/validate-discount")
def validate_discount_route():
    try:
        data = request.get_json(silent=True) or {}
        code = data.get("code")
        if not code or not isinstance(code, str):
            return jsonify({"valid": False, "error": "Discount code is required"}), 400

        result = discount_service.validate_for_checkout(
            code, _subtotal_pence(data), data.get("customer_email") or data.get("email")
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"valid": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Discount validation failed")
        return jsonify({"valid": False, "error": "Failed to validate discount code"}), 500
