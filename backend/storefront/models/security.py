from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AuditLog(db.Model):
    """
    Security and administration audit trail.

    IMMUTABLE: append-only. Anomaly detection counts rows of this table.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_action_created", "action", "created_at"),
        db.Index("ix_audit_logs_ip_created", "ip_address", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)

    user_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for anonymous
    user_email = db.Column(db.String(254), nullable=True)

    resource_type = db.Column(db.String(64), nullable=True)
    resource_id = db.Column(db.String(128), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }
