# Overview: Append-only audit trail and threshold-based security anomaly alerts.

"""
Audit logging and anomaly detection.

Every authentication outcome and every administrative mutation writes an
AuditLog row. Audit failures are logged and never fail the calling operation.

Anomaly checks count recent audit rows (or flagged orders) and, past a
threshold, write a `security_alert_<type>` entry and log a warning.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditLog, Order
from ..time_utils import to_utc_z, utcnow


logger = logging.getLogger(__name__)


class AuditAction:
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    MFA_SETUP = "mfa_setup"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    MFA_BACKUP_USED = "mfa_backup_used"
    MFA_BACKUP_REGENERATED = "mfa_backup_regenerated"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_TOKEN_REPLAY = "refresh_token_replay"
    PERMISSION_DENIED = "permission_denied"
    ADMIN_IP_BLOCKED = "admin_ip_blocked"
    ORDER_STATUS_UPDATED = "order_status_updated"
    GIFT_CARD_CHECK_FAILED = "gift_card_check_failed"
    GIFT_CARD_ACTIVATED = "gift_card_activated"


class AlertType:
    BRUTE_FORCE_LOGIN = "brute_force_login"
    GIFT_CARD_ENUMERATION = "gift_card_enumeration"
    AMOUNT_MANIPULATION = "amount_manipulation"


FAILED_LOGINS_PER_IP = 5
FAILED_LOGINS_WINDOW = timedelta(hours=1)
GIFT_CARD_CHECKS_PER_IP = 10
GIFT_CARD_WINDOW = timedelta(hours=1)
AMOUNT_MISMATCH_COUNT = 3
AMOUNT_MISMATCH_WINDOW = timedelta(hours=24)

AMOUNT_MISMATCH_MARKER = "AMOUNT MISMATCH"


# =============================================================================
# REQUEST CONTEXT
# =============================================================================

def client_ip(req) -> str:
    """First address of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = req.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return req.headers.get("X-Real-IP") or req.remote_addr or "unknown"


def user_agent(req) -> str | None:
    agent = req.headers.get("User-Agent")
    return agent[:512] if agent else None


# =============================================================================
# AUDIT TRAIL
# =============================================================================

def log_event(
    action: str,
    user_id: int | None = None,
    user_email: str | None = None,
    resource_type: str | None = None,
    resource_id=None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog | None:
    """
    Append an audit entry and commit it.

    Call after the business transaction has committed; a failure here rolls
    back only the audit insert.
    """
    entry = AuditLog(
        action=action,
        user_id=user_id,
        user_email=user_email,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    try:
        db.session.add(entry)
        db.session.commit()
        return entry
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit log insert failed for action %s", action)
        return None


def log_request_event(req, action: str, user=None, **kwargs) -> AuditLog | None:
    """log_event with actor and client context taken from a request and user object or token payload."""
    user_id = None
    user_email = None
    if isinstance(user, dict):
        user_id = user.get("userId")
        user_email = user.get("email")
    elif user is not None:
        user_id = user.id
        user_email = user.email
    return log_event(
        action,
        user_id=user_id,
        user_email=user_email,
        ip_address=client_ip(req),
        user_agent=user_agent(req),
        **kwargs,
    )


def list_events(action: str | None = None, limit: int = 50, offset: int = 0) -> tuple[list[AuditLog], int]:
    query = db.session.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    total = query.count()
    rows = (
        query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


# =============================================================================
# ANOMALY DETECTION
# =============================================================================

def create_alert(alert_type: str, severity: str, message: str, details: dict) -> AuditLog | None:
    prefix = {
        "critical": "CRITICAL SECURITY ALERT",
        "high": "HIGH SECURITY ALERT",
    }.get(severity, "SECURITY ALERT")
    logger.warning("[%s] %s %s", prefix, message, details)

    payload = {
        "alert_type": alert_type,
        "severity": severity,
        "message": message,
        "timestamp": to_utc_z(utcnow()),
    }
    payload.update(details)
    return log_event(f"security_alert_{alert_type}", resource_type="security", details=payload)


def _count_recent(action: str, ip_address: str, window: timedelta) -> int:
    return (
        db.session.query(AuditLog)
        .filter(
            AuditLog.action == action,
            AuditLog.ip_address == ip_address,
            AuditLog.created_at >= utcnow() - window,
        )
        .count()
    )


def check_login_anomaly(email: str, ip_address: str) -> str | None:
    """Alert type raised, if any."""
    try:
        count = _count_recent(AuditAction.LOGIN_FAILED, ip_address, FAILED_LOGINS_WINDOW)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Login anomaly query failed")
        return None

    if count < FAILED_LOGINS_PER_IP:
        return None
    create_alert(
        AlertType.BRUTE_FORCE_LOGIN,
        "high",
        f"Possible brute force attack: {count} failed login attempts from IP {ip_address}",
        {"ip": ip_address, "email": email, "failed_attempts": count, "window_hours": 1},
    )
    return AlertType.BRUTE_FORCE_LOGIN


def check_gift_card_anomaly(ip_address: str, code: str | None) -> str | None:
    try:
        count = _count_recent(AuditAction.GIFT_CARD_CHECK_FAILED, ip_address, GIFT_CARD_WINDOW)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Gift card anomaly query failed")
        return None

    if count < GIFT_CARD_CHECKS_PER_IP:
        return None
    create_alert(
        AlertType.GIFT_CARD_ENUMERATION,
        "medium",
        f"Possible gift card enumeration: {count} invalid checks from IP {ip_address}",
        {"ip": ip_address, "last_code_tried": code, "attempt_count": count, "window_hours": 1},
    )
    return AlertType.GIFT_CARD_ENUMERATION


def check_amount_anomaly(order_number: str, expected_pence: int, actual_pence: int, email: str | None) -> str | None:
    try:
        count = (
            db.session.query(Order)
            .filter(
                Order.notes.ilike(f"%{AMOUNT_MISMATCH_MARKER}%"),
                Order.created_at >= utcnow() - AMOUNT_MISMATCH_WINDOW,
            )
            .count()
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Amount anomaly query failed")
        return None

    if count < AMOUNT_MISMATCH_COUNT:
        return None
    create_alert(
        AlertType.AMOUNT_MANIPULATION,
        "critical",
        f"CRITICAL: {count} orders with amount mismatches in 24h - possible price manipulation attack",
        {
            "order_number": order_number,
            "expected_amount": expected_pence,
            "actual_amount": actual_pence,
            "customer_email": email,
            "mismatch_count": count,
            "window_hours": 24,
        },
    )
    return AlertType.AMOUNT_MANIPULATION
