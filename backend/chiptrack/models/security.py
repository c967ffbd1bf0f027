from __future__ import annotations

from ..extensions import db
from chiptrack.time_utils import to_utc_z


SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"
SEVERITY_CRITICAL = "CRITICAL"


class SecurityEvent(db.Model):
    """
    Security event audit log with tenant context.

    Records login failures, cross-tenant denials and every anti-clone
    rejection during chip activation. uid/chip_id are copied as plain strings
    so an event survives even when the uid is not in the registry.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_user_type", "user_id", "event_type"),
        db.Index("ix_security_events_customer_occurred", "customer_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)  # Nullable for pre-auth events
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)  # Nullable for anonymous

    # Event classification
    event_type = db.Column(db.String(64), nullable=False, index=True)  # LOGIN_FAILED, CHIP_ACTIVATION_REJECTED, ...
    severity = db.Column(db.String(16), nullable=False, default=SEVERITY_INFO)
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/api/chips/activate-chip"
    action = db.Column(db.String(64), nullable=True)

    # Chip context (free text, not foreign keys)
    uid = db.Column(db.String(64), nullable=True, index=True)
    chip_id = db.Column(db.String(64), nullable=True)

    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)  # e.g., "CHECKSUM_MISMATCH"

    # Client context
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "resource": self.resource,
            "action": self.action,
            "uid": self.uid,
            "chip_id": self.chip_id,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
