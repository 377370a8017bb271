# Overview: Flask API routes for administrator login, token verification, refresh rotation, and logout.

"""
Administrator authentication.

SECURITY FEATURES:
- Dual-keyed login throttling (email and client IP)
- Legacy SHA-256 digests upgraded to bcrypt on successful login
- Second factor mandatory: a password alone never yields a session
- Rotating refresh tokens; a replayed refresh token is rejected and audited
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, make_response, request

from ..decorators import require_admin_ip, require_auth
from ..services import audit_service, auth_service, rate_limit_service, session_service, token_service
from ..services.audit_service import AuditAction
from ..services.session_service import RefreshReplayError, SessionError
from ..services.token_service import TokenConfigError


admin_auth_bp = Blueprint("admin_auth", __name__, url_prefix="/api")


def session_response(user, body: dict, status: int = 200):
    """JSON body plus the access/refresh/CSRF cookie trio for a fresh session."""
    session = session_service.issue(user)
    auth_service.record_login(user)
    payload = dict(body)
    payload["user"] = auth_service.public_user(user)
    payload["csrfToken"] = session.csrf_token
    response = make_response(jsonify(payload), status)
    return token_service.set_session_cookies(response, session)


def _login_failed(email: str, ip_address: str, reason: str, user=None):
    rate_limit_service.record_login_failure(email, ip_address)
    audit_service.log_request_event(
        request,
        AuditAction.LOGIN_FAILED,
        user=user,
        resource_type="admin_user",
        resource_id=user.id if user is not None else None,
        details={"email": email, "reason": reason},
    )
    audit_service.check_login_anomaly(email, ip_address)
    return jsonify({"error": "Invalid credentials"}), 401


@admin_auth_bp.post("/admin-auth")
@require_admin_ip
def login_route():
    """
    Password step of the admin login.

    Never returns a session: the response routes the client to the second
    factor (requiresMfa + preMfaToken) or to enrolment (requiresMfaSetup +
    setupToken).
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password or not isinstance(email, str) or not isinstance(password, str):
            return jsonify({"error": "Email and password are required"}), 400

        email = email.strip().lower()
        ip_address = audit_service.client_ip(request)

        limit = rate_limit_service.check_login(email, ip_address)
        if not limit.allowed:
            response = jsonify({
                "error": "Too many login attempts. Please try again later.",
                "retryAfter": limit.retry_after_seconds,
            })
            response.headers["Retry-After"] = str(limit.retry_after_seconds)
            return response, 429

        user = auth_service.find_user_by_email(email)
        if user is None or not user.is_active:
            return _login_failed(email, ip_address, "unknown or inactive user")

        valid, needs_rehash = auth_service.verify_password(
            password, user.password_hash, current_app.config.get("JWT_SECRET")
        )
        if not valid:
            return _login_failed(email, ip_address, "invalid password", user=user)

        if needs_rehash:
            auth_service.upgrade_password_hash(user, password)

        rate_limit_service.clear_login(email)

        if user.mfa_enabled:
            return jsonify({
                "requiresMfa": True,
                "preMfaToken": token_service.create_pre_mfa_token(user),
            }), 200

        partial = bool(user.mfa_secret)
        body = {
            "requiresMfaSetup": True,
            "setupToken": token_service.create_setup_token(user, partial=partial),
            "user": auth_service.public_user(user),
        }
        if partial:
            body["partialSetup"] = True
        return jsonify(body), 200

    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("Admin login failed")
        return jsonify({"error": "Login failed"}), 500


@admin_auth_bp.get("/admin-auth")
@require_admin_ip
@require_auth
def verify_route():
    """Confirm the presented access token and return its user."""
    user = auth_service.get_user(g.current_user.get("userId"))
    if user is None or not user.is_active:
        return jsonify({"error": "User not found or inactive"}), 401
    return jsonify({"valid": True, "user": auth_service.public_user(user)}), 200


@admin_auth_bp.delete("/admin-auth")
@require_admin_ip
def logout_route():
    """Revoke the refresh token and expire all three cookies."""
    try:
        access = token_service.verify_request(request)
        session_service.logout(request.cookies.get(token_service.REFRESH_COOKIE))
        if access.valid:
            audit_service.log_request_event(
                request,
                AuditAction.LOGOUT,
                user=access.payload,
                resource_type="admin_user",
                resource_id=access.payload.get("userId"),
            )
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("Logout failed")

    response = make_response(jsonify({"success": True}), 200)
    return token_service.clear_session_cookies(response)


@admin_auth_bp.post("/admin-refresh")
@require_admin_ip
def refresh_route():
    """Spend the refresh cookie and issue a rotated token trio."""
    try:
        rotated = session_service.rotate(request.cookies.get(token_service.REFRESH_COOKIE))
    except RefreshReplayError as e:
        audit_service.log_request_event(
            request,
            AuditAction.REFRESH_TOKEN_REPLAY,
            resource_type="session",
        )
        response = make_response(jsonify({"error": str(e)}), 401)
        return token_service.clear_session_cookies(response)
    except SessionError as e:
        response = make_response(jsonify({"error": str(e)}), 401)
        return token_service.clear_session_cookies(response)
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("Token refresh failed")
        return jsonify({"error": "Token refresh failed"}), 500

    audit_service.log_request_event(
        request,
        AuditAction.TOKEN_REFRESHED,
        user=rotated.user,
        resource_type="admin_user",
        resource_id=rotated.user.id,
    )
    response = make_response(
        jsonify({"user": auth_service.public_user(rotated.user), "csrfToken": rotated.session.csrf_token}),
        200,
    )
    return token_service.set_session_cookies(response, rotated.session)
