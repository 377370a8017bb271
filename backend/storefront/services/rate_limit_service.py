# Overview: Persistent per-key attempt counter with lockout windows and an in-process fallback.

"""
Rate limiting for authentication endpoints.

Keys look like `email:<lowercased>` or `ip:<address>`. The first failure opens
a 15 minute window; the failure that reaches `max_attempts` locks the key for
15 minutes from that moment. A successful login clears the email key only;
the IP key drains by time.

The database is the primary store. Any SQLAlchemy error (including the
driver-level statement timeout configured in Config) degrades to a
process-local map, which is approximate across workers.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import RateLimitRecord
from ..time_utils import utcnow
from .concurrency import lock_for_update


logger = logging.getLogger(__name__)


MAX_ATTEMPTS_PER_EMAIL = 5
MAX_ATTEMPTS_PER_IP = 50
LOCKOUT_DURATION = timedelta(minutes=15)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    retry_after_seconds: int | None
    attempts: int


def _retry_after(until: datetime, now: datetime) -> int:
    return max(1, math.ceil((until - now).total_seconds()))


def _evaluate(attempts: int, window_expires_at, locked_until, max_attempts: int, now: datetime) -> RateLimitStatus:
    if locked_until is not None and locked_until > now and attempts >= max_attempts:
        return RateLimitStatus(False, _retry_after(locked_until, now), attempts)
    if window_expires_at is None or window_expires_at <= now:
        return RateLimitStatus(True, None, 0)
    if attempts >= max_attempts:
        # Reached the cap under a larger limit; the window bounds the lock.
        return RateLimitStatus(False, _retry_after(window_expires_at, now), attempts)
    return RateLimitStatus(True, None, attempts)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class MemoryRateLimitStore:
    """Thread-safe process-local counter with the same semantics as the table."""

    def __init__(self, lockout: timedelta = LOCKOUT_DURATION):
        self._lockout = lockout
        self._entries: dict[str, dict] = {}
        self._lock = threading.Lock()

    def check(self, key: str, max_attempts: int) -> RateLimitStatus:
        now = utcnow()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return RateLimitStatus(True, None, 0)
            if entry["window_expires_at"] <= now and (entry["locked_until"] is None or entry["locked_until"] <= now):
                del self._entries[key]
                return RateLimitStatus(True, None, 0)
            return _evaluate(entry["attempts"], entry["window_expires_at"], entry["locked_until"], max_attempts, now)

    def record_failure(self, key: str, max_attempts: int | None = None) -> int:
        now = utcnow()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or (
                entry["window_expires_at"] <= now
                and (entry["locked_until"] is None or entry["locked_until"] <= now)
            ):
                entry = {"attempts": 0, "window_expires_at": now + self._lockout, "locked_until": None}
                self._entries[key] = entry
            entry["attempts"] += 1
            if max_attempts is not None and entry["attempts"] >= max_attempts and entry["locked_until"] is None:
                entry["locked_until"] = now + self._lockout
            return entry["attempts"]

    def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


_memory_store = MemoryRateLimitStore()


def memory_store() -> MemoryRateLimitStore:
    return _memory_store


# =============================================================================
# PERSISTENT STORE
# =============================================================================

def _check_db(key: str, max_attempts: int) -> RateLimitStatus:
    record = db.session.query(RateLimitRecord).filter_by(key=key).first()
    if record is None:
        return RateLimitStatus(True, None, 0)
    return _evaluate(record.attempts, record.window_expires_at, record.locked_until, max_attempts, utcnow())


def _apply_failure(record: RateLimitRecord, max_attempts: int | None, now: datetime) -> None:
    window_open = record.window_expires_at is not None and record.window_expires_at > now
    still_locked = record.locked_until is not None and record.locked_until > now
    if not window_open and not still_locked:
        record.attempts = 0
        record.window_expires_at = now + LOCKOUT_DURATION
        record.locked_until = None
    record.attempts += 1
    if max_attempts is not None and record.attempts >= max_attempts and not still_locked:
        record.locked_until = now + LOCKOUT_DURATION


def _record_failure_db(key: str, max_attempts: int | None) -> int:
    now = utcnow()
    record = lock_for_update(db.session.query(RateLimitRecord).filter_by(key=key)).first()
    if record is None:
        record = RateLimitRecord(key=key, attempts=0, window_expires_at=None, locked_until=None)
        db.session.add(record)
        _apply_failure(record, max_attempts, now)
        try:
            db.session.commit()
            return record.attempts
        except IntegrityError:
            # Another request created the row first
            db.session.rollback()
            record = lock_for_update(db.session.query(RateLimitRecord).filter_by(key=key)).one()

    _apply_failure(record, max_attempts, now)
    db.session.commit()
    return record.attempts


def _clear_db(key: str) -> None:
    db.session.query(RateLimitRecord).filter_by(key=key).delete(synchronize_session=False)
    db.session.commit()


# =============================================================================
# PUBLIC API
# =============================================================================

def check(key: str, max_attempts: int) -> RateLimitStatus:
    try:
        return _check_db(key, max_attempts)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Rate limit check failed for %s, using in-memory store: %s", key, exc)
        return _memory_store.check(key, max_attempts)


def record_failure(key: str, max_attempts: int | None = None) -> int:
    """Count one failure; returns the attempt count within the current window."""
    try:
        return _record_failure_db(key, max_attempts)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Rate limit record failed for %s, using in-memory store: %s", key, exc)
        return _memory_store.record_failure(key, max_attempts)


def clear(key: str) -> None:
    try:
        _clear_db(key)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Rate limit clear failed for %s, clearing in-memory store: %s", key, exc)
    _memory_store.clear(key)


def cleanup_expired() -> int:
    """Delete rows whose window and lock have both lapsed. Returns rows removed."""
    now = utcnow()
    deleted = (
        db.session.query(RateLimitRecord)
        .filter(
            db.or_(RateLimitRecord.window_expires_at.is_(None), RateLimitRecord.window_expires_at <= now),
            db.or_(RateLimitRecord.locked_until.is_(None), RateLimitRecord.locked_until <= now),
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted


# =============================================================================
# LOGIN KEYS
# =============================================================================

def email_key(email: str) -> str:
    return f"email:{email.strip().lower()}"


def ip_key(ip_address: str | None) -> str:
    return f"ip:{ip_address or 'unknown'}"


def check_login(email: str, ip_address: str | None) -> RateLimitStatus:
    """Both keys are consulted; the more restrictive answer wins."""
    email_status = check(email_key(email), MAX_ATTEMPTS_PER_EMAIL)
    ip_status = check(ip_key(ip_address), MAX_ATTEMPTS_PER_IP)
    blocked = [s for s in (email_status, ip_status) if not s.allowed]
    if blocked:
        return max(blocked, key=lambda s: s.retry_after_seconds or 0)
    return email_status


def record_login_failure(email: str, ip_address: str | None) -> None:
    record_failure(email_key(email), MAX_ATTEMPTS_PER_EMAIL)
    record_failure(ip_key(ip_address), MAX_ATTEMPTS_PER_IP)


def clear_login(email: str) -> None:
    clear(email_key(email))
