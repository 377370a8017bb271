# Overview: Request decorators for admin routes; IP allowlist, hybrid token admission, and permission gating.

from functools import wraps

from flask import current_app, g, jsonify, request

from .permissions import has_permission
from .services import audit_service, token_service
from .services.audit_service import AuditAction
from .services.token_service import TokenConfigError


def _is_authenticated() -> bool:
    return hasattr(g, "current_user")


def admin_ip_allowed(req) -> bool:
    allowed = current_app.config.get("ADMIN_ALLOWED_IPS") or []
    if not allowed:
        return True
    return audit_service.client_ip(req) in allowed


def require_admin_ip(f):
    """
    Reject admin requests from addresses outside ADMIN_ALLOWED_IPS.

    Runs before authentication; an empty list allows every address.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not admin_ip_allowed(request):
            ip_address = audit_service.client_ip(request)
            current_app.logger.warning("Admin access blocked for IP %s on %s", ip_address, request.path)
            audit_service.log_request_event(
                request,
                AuditAction.ADMIN_IP_BLOCKED,
                resource_type="endpoint",
                resource_id=request.path,
                details={"method": request.method},
            )
            return jsonify({"error": "Access denied"}), 403
        return f(*args, **kwargs)

    return decorated_function


def require_auth(f):
    """
    Require a verified access token (Bearer header or cookie + CSRF).

    Sets g.current_user to the token payload:
    {userId, email, name, role, type, mfaVerified}

    SECURITY: Returns 401 for a missing, invalid, or expired token (with
    `expired: true` so the client can refresh) and for a failed CSRF check.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            result = token_service.verify_request(request)
        except TokenConfigError as e:
            return jsonify({"error": str(e)}), 500

        if not result.valid:
            body = {"error": result.error or "Unauthorized"}
            if result.expired:
                body["expired"] = True
            return jsonify(body), 401

        g.current_user = result.payload
        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require a permission of the authenticated user's role. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            user = g.current_user
            if not has_permission(user.get("role"), permission_code):
                audit_service.log_request_event(
                    request,
                    AuditAction.PERMISSION_DENIED,
                    user=user,
                    resource_type="endpoint",
                    resource_id=request.path,
                    details={"required_permission": permission_code, "role": user.get("role")},
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_permission": permission_code,
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
