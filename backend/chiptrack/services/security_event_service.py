# Overview: Append-only security audit trail (login failures, tenant denials, anti-clone rejections).

"""
Security Event Logging

WHY: Anti-clone rejections must stand out from ordinary validation noise.
Every rejected activation, failed login and cross-tenant access attempt is
written to security_events and mirrored to the application log.

Events are committed on their own. Callers that were in the middle of a
chip transaction roll back first, so a failed activation leaves exactly
one trace: the security event.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app, has_request_context, request

from ..extensions import db
from ..models import SecurityEvent
from ..models.security import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING
from chiptrack.time_utils import utcnow


_LOG_LEVEL_BY_SEVERITY = {
    SEVERITY_INFO: "info",
    SEVERITY_WARNING: "warning",
    SEVERITY_CRITICAL: "critical",
}


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    reason: str | None = None,
    customer_id: int | None = None,
    uid: str | None = None,
    chip_id: str | None = None,
    severity: str = SEVERITY_INFO,
    resource: str | None = None,
    action: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    Request path, method, client IP and user agent default to the current
    request when called inside one.

    event_type examples:
    - LOGIN_FAILED
    - LOGOUT
    - CROSS_TENANT_ACCESS_DENIED
    - CHIP_ACTIVATION_REJECTED
    - CHIP_SCAN_REJECTED
    - CHIP_ACTIVATED
    """
    if has_request_context():
        resource = resource or request.path
        action = action or request.method
        ip_address = ip_address or request.remote_addr
        user_agent = user_agent or request.headers.get("User-Agent")

    event = SecurityEvent(
        user_id=user_id,
        customer_id=customer_id,
        event_type=event_type,
        severity=severity,
        resource=resource,
        action=action,
        uid=uid,
        chip_id=chip_id,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    )

    db.session.add(event)
    db.session.commit()

    log = getattr(current_app.logger, _LOG_LEVEL_BY_SEVERITY.get(severity, "info"))
    log(
        "security event %s success=%s reason=%s customer=%s user=%s uid=%s",
        event_type, success, reason, customer_id, user_id, uid,
    )
    return event


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """Delete security events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete()
    db.session.commit()
    return deleted
