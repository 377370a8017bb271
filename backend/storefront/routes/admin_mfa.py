# Overview: Flask API routes for the administrator second factor; enrolment, login completion, backup codes.

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin_ip, require_auth
from ..services import audit_service, auth_service, mfa_service, token_service
from ..services.audit_service import AuditAction
from ..services.mfa_service import LOW_BACKUP_CODE_WARNING, MFA_MAX_ATTEMPTS, limiter_key, mfa_limiter
from ..services.token_service import TokenConfigError
from .admin_auth import session_response


admin_mfa_bp = Blueprint("admin_mfa", __name__, url_prefix="/api/admin-mfa")


def _presented_token(data: dict, *names: str) -> str | None:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
    return token_service.bearer_token(request)


def _throttled(user_id):
    """429 response when the per-user MFA limiter is locked, else None."""
    status = mfa_limiter.check(limiter_key(user_id), MFA_MAX_ATTEMPTS)
    if status.allowed:
        return None
    response = jsonify({
        "error": "Too many verification attempts. Please try again later.",
        "retryAfter": status.retry_after_seconds,
    })
    response.headers["Retry-After"] = str(status.retry_after_seconds)
    return response, 429


def _mfa_failed(user, reason: str, message: str):
    mfa_limiter.record_failure(limiter_key(user.id), MFA_MAX_ATTEMPTS)
    audit_service.log_request_event(
        request,
        AuditAction.MFA_FAILED,
        user=user,
        resource_type="admin_user",
        resource_id=user.id,
        details={"reason": reason},
    )
    return jsonify({"error": message}), 400


def _user_from_token(result):
    if not result.valid:
        return None, (jsonify({"error": result.error or "Invalid token"}), 401)
    user = auth_service.get_user(result.payload.get("userId"))
    if user is None or not user.is_active:
        return None, (jsonify({"error": "User not found or inactive"}), 401)
    return user, None


def _log_login(user, method: str):
    audit_service.log_request_event(
        request,
        AuditAction.LOGIN_SUCCESS,
        user=user,
        resource_type="admin_user",
        resource_id=user.id,
        details={"method": method},
    )


# =============================================================================
# ENROLMENT
# =============================================================================

@admin_mfa_bp.post("/setup")
@require_admin_ip
def setup_route():
    """Generate a TOTP secret for a user holding a setup token."""
    try:
        data = request.get_json(silent=True) or {}
        token = _presented_token(data, "setupToken", "setup_token")
        user, error = _user_from_token(token_service.verify_setup_token(token))
        if error:
            return error
        if user.mfa_enabled:
            return jsonify({"error": "MFA is already enabled"}), 400

        secret = mfa_service.begin_setup(user)
        return jsonify({
            "secret": secret,
            "otpauthUrl": mfa_service.provisioning_uri(secret, user.email, current_app.config["STORE_NAME"]),
        }), 200
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("MFA setup failed")
        return jsonify({"error": "MFA setup failed"}), 500


@admin_mfa_bp.post("/verify")
@require_admin_ip
def verify_route():
    """Confirm enrolment with a first TOTP code; returns backup codes once and opens a session."""
    try:
        data = request.get_json(silent=True) or {}
        token = _presented_token(data, "setupToken", "setup_token")
        user, error = _user_from_token(token_service.verify_setup_token(token))
        if error:
            return error
        if not user.mfa_secret:
            return jsonify({"error": "MFA setup has not been started"}), 400

        throttled = _throttled(user.id)
        if throttled:
            return throttled
        if not mfa_service.verify_totp(user.mfa_secret, data.get("code")):
            return _mfa_failed(user, "invalid setup code", "Invalid verification code")

        mfa_limiter.clear(limiter_key(user.id))
        backup_codes = mfa_service.enable(user)
        audit_service.log_request_event(
            request, AuditAction.MFA_SETUP, user=user, resource_type="admin_user", resource_id=user.id
        )
        _log_login(user, "mfa_setup")
        return session_response(user, {"success": True, "backupCodes": backup_codes})
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("MFA verification failed")
        return jsonify({"error": "MFA verification failed"}), 500


# =============================================================================
# LOGIN COMPLETION
# =============================================================================

@admin_mfa_bp.post("/validate")
@require_admin_ip
def validate_route():
    """Second step of login: pre-MFA token plus a current TOTP code."""
    try:
        data = request.get_json(silent=True) or {}
        token = _presented_token(data, "preMfaToken", "pre_mfa_token")
        user, error = _user_from_token(token_service.verify_pre_mfa_token(token))
        if error:
            return error
        if not user.mfa_enabled:
            return jsonify({"error": "MFA is not enabled for this account"}), 400

        throttled = _throttled(user.id)
        if throttled:
            return throttled
        if not mfa_service.verify_totp(user.mfa_secret, data.get("code")):
            return _mfa_failed(user, "invalid code", "Invalid verification code")

        mfa_limiter.clear(limiter_key(user.id))
        _log_login(user, "totp")
        audit_service.log_request_event(
            request, AuditAction.MFA_VERIFIED, user=user, resource_type="admin_user", resource_id=user.id
        )
        return session_response(user, {"success": True})
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("MFA validation failed")
        return jsonify({"error": "MFA validation failed"}), 500


@admin_mfa_bp.post("/backup")
@require_admin_ip
def backup_route():
    """Second step of login with a single-use backup code."""
    try:
        data = request.get_json(silent=True) or {}
        token = _presented_token(data, "preMfaToken", "pre_mfa_token")
        user, error = _user_from_token(token_service.verify_pre_mfa_token(token))
        if error:
            return error

        code = data.get("code")
        if not code or not isinstance(code, str):
            return jsonify({"error": "Backup code is required"}), 400

        throttled = _throttled(user.id)
        if throttled:
            return throttled

        remaining = mfa_service.redeem_backup_code(user.id, code)
        if remaining is None:
            return _mfa_failed(user, "invalid backup code", "Invalid backup code")

        mfa_limiter.clear(limiter_key(user.id))
        audit_service.log_request_event(
            request,
            AuditAction.MFA_BACKUP_USED,
            user=user,
            resource_type="admin_user",
            resource_id=user.id,
            details={"remaining": remaining},
        )
        _log_login(user, "backup_code")

        body = {"success": True, "backupCodesRemaining": remaining}
        if remaining < LOW_BACKUP_CODE_WARNING:
            body["warning"] = f"Only {remaining} backup codes remaining. Please regenerate your backup codes."
        return session_response(user, body)
    except TokenConfigError as e:
        return jsonify({"error": str(e)}), 500
    except Exception:
        current_app.logger.exception("Backup code validation failed")
        return jsonify({"error": "Backup code validation failed"}), 500


# =============================================================================
# MANAGEMENT
# =============================================================================

@admin_mfa_bp.post("/regenerate")
@require_admin_ip
@require_auth
def regenerate_route():
    """Replace all backup codes; requires a fresh TOTP code."""
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.get_user(g.current_user.get("userId"))
        if user is None or not user.is_active:
            return jsonify({"error": "User not found or inactive"}), 401
        if not user.mfa_enabled:
            return jsonify({"error": "MFA is not enabled for this account"}), 400

        throttled = _throttled(user.id)
        if throttled:
            return throttled
        if not mfa_service.verify_totp(user.mfa_secret, data.get("code")):
            return _mfa_failed(user, "invalid code for regeneration", "Invalid verification code")

        mfa_limiter.clear(limiter_key(user.id))
        backup_codes = mfa_service.regenerate_backup_codes(user)
        audit_service.log_request_event(
            request,
            AuditAction.MFA_BACKUP_REGENERATED,
            user=user,
            resource_type="admin_user",
            resource_id=user.id,
        )
        return jsonify({"success": True, "backupCodes": backup_codes}), 200
    except Exception:
        current_app.logger.exception("Backup code regeneration failed")
        return jsonify({"error": "Backup code regeneration failed"}), 500


@admin_mfa_bp.get("/status")
@require_admin_ip
@require_auth
def status_route():
    user = auth_service.get_user(g.current_user.get("userId"))
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify({
        "mfaEnabled": bool(user.mfa_enabled),
        "backupCodesRemaining": len(user.mfa_backup_codes or []),
    }), 200
