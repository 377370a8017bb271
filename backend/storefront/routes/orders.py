# Overview: Public order lookup by order number; returns only non-sensitive fields.

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..services import order_service
from ..validation import validate_order_number


orders_bp = Blueprint("orders", __name__, url_prefix="/api")


@orders_bp.get("/orders")
def get_order_route():
    order_number = (request.args.get("order_number") or "").strip().upper()
    result = validate_order_number(order_number)
    if not result:
        return jsonify({"error": result.error}), 400

    try:
        order = order_service.get_by_order_number(order_number)
    except Exception:
        current_app.logger.exception("Order lookup failed for %s", order_number)
        return jsonify({"error": "Failed to fetch order"}), 500

    if order is None:
        return jsonify({"error": "Order not found"}), 404
    return jsonify({"order": order.to_public_dict()}), 200
