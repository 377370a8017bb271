# Overview: Flask API routes for administrator operations; order management and the audit trail.

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin_ip, require_auth, require_permission
from ..models import OrderStatus
from ..permissions import Permission
from ..services import audit_service, order_service
from ..services.audit_service import AuditAction
from ..validation import NotFoundError, ValidationError, sanitize_string


admin_bp = Blueprint("admin", __name__, url_prefix="/api")

MAX_PAGE_SIZE = 100


def _page_args() -> tuple[int, int]:
    limit = request.args.get("limit", 50, type=int) or 50
    offset = request.args.get("offset", 0, type=int) or 0
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/admin-orders")
@require_admin_ip
@require_auth
@require_permission(Permission.VIEW_ALL_ORDERS)
def list_orders_route():
    """
    List orders, newest first.

    Query params:
    - status: one of pending, paid, shipped, delivered, cancelled
    - limit (max 100), offset
    """
    status = request.args.get("status") or None
    if status and status not in {s.value for s in OrderStatus}:
        return jsonify({"error": "Invalid status filter"}), 400

    limit, offset = _page_args()
    try:
        rows, total = order_service.list_orders(status=status, limit=limit, offset=offset)
        return jsonify({
            "orders": [order_service.admin_dict(order) for order in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except Exception:
        current_app.logger.exception("Admin order listing failed")
        return jsonify({"error": "Failed to fetch orders"}), 500


@admin_bp.put("/admin-orders")
@require_admin_ip
@require_auth
@require_permission(Permission.UPDATE_ORDER_STATUS)
def update_order_route():
    data = request.get_json(silent=True) or {}
    order_id = data.get("id")
    new_status = data.get("status")
    if not isinstance(order_id, int) or isinstance(order_id, bool) or not new_status:
        return jsonify({"error": "Order id and status are required"}), 400

    notes = data.get("notes")
    if notes is not None:
        notes = sanitize_string(notes, 2000)

    try:
        order, previous = order_service.update_status(order_id, new_status, notes)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Order status update failed for %s", order_id)
        return jsonify({"error": "Failed to update order"}), 500

    audit_service.log_request_event(
        request,
        AuditAction.ORDER_STATUS_UPDATED,
        user=g.current_user,
        resource_type="order",
        resource_id=order.id,
        details={"order_number": order.order_number, "old_status": previous, "new_status": order.status},
    )
    return jsonify({"success": True, "order": order_service.admin_dict(order)}), 200


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@admin_bp.get("/admin-audit")
@require_admin_ip
@require_auth
@require_permission(Permission.VIEW_AUDIT_LOGS)
def list_audit_route():
    action = request.args.get("action") or None
    limit, offset = _page_args()
    try:
        rows, total = audit_service.list_events(action=action, limit=limit, offset=offset)
        return jsonify({
            "logs": [row.to_dict() for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except Exception:
        current_app.logger.exception("Audit log listing failed")
        return jsonify({"error": "Failed to fetch audit logs"}), 500
