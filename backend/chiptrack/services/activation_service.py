# Overview: Client-side chip activation (anti-clone + quota + FIFO order) and scan validation.

"""
Chip Activation

A client scans a chip from neutral stock with the mobile app. The app reads
the UID, block 1 (chip UUID), block 4 and block 8 and submits them. The
server accepts the chip only if every layer passes:

1. UID is in the registry (whitelist)           -> SecurityViolation UNKNOWN_UID
2. chip is EN_STOCK                             -> InvalidTransitionError
3. chip_id / block4 / block8 present, well formed -> ValidationError
4. chip_id matches the registry UUID            -> SecurityViolation CHIP_ID_MISMATCH
5. block 4 matches the registry chip_id         -> SecurityViolation BLOCK4_MISMATCH
6. block 8 matches the registry checksum        -> SecurityViolation CHECKSUM_MISMATCH
7. customer subscription active                 -> BusinessRuleError
8. INACTIVE + ACTIVE chips below the chip limit -> BusinessRuleError
9. a delivered order has a free slot (FIFO)     -> BusinessRuleError

Security violations roll back, then land in security_events with their
reason code. The caller only ever sees a generic refusal.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Customer, RfidChip
from ..models.chips import QUOTA_STATUSES, ChipStatus
from ..models.security import SEVERITY_CRITICAL, SEVERITY_INFO
from ..validation import BusinessRuleError, NotFoundError, normalize_uid
from . import chip_security_service, lifecycle_service, order_service, security_event_service
from .chip_security_service import CHECKSUM_MISMATCH, UNKNOWN_UID, SecurityViolationError
from .concurrency import ConcurrentModificationError
from .lifecycle_service import ChipAction, InvalidTransitionError


def chip_limit_for(customer: Customer) -> int:
    if customer.chip_limit is not None:
        return customer.chip_limit
    return current_app.config.get("DEFAULT_CHIP_LIMIT", 1000)


def count_quota_chips(customer_id: int) -> int:
    return (
        db.session.query(func.count(RfidChip.id))
        .filter(RfidChip.customer_id == customer_id, RfidChip.status.in_(QUOTA_STATUSES))
        .scalar()
    ) or 0


def _check_subscription_and_quota(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    if not customer.is_active:
        raise BusinessRuleError("Customer subscription is not active")
    limit = chip_limit_for(customer)
    used = count_quota_chips(customer_id)
    if used >= limit:
        raise BusinessRuleError(f"Chip limit reached ({used}/{limit}) for this subscription")
    return customer


def _record_violation(exc: SecurityViolationError, *, customer_id: int, user_id: int | None) -> None:
    security_event_service.log_security_event(
        user_id=user_id,
        customer_id=customer_id,
        event_type="CHIP_ACTIVATION_REJECTED",
        success=False,
        severity=SEVERITY_CRITICAL,
        reason=exc.reason_code,
        uid=exc.uid,
        chip_id=exc.chip_id,
    )


def activate_chip(
    customer_id: int,
    uid,
    chip_id,
    block4_data,
    block8_data,
    *,
    user_id: int | None = None,
) -> dict:
    """
    Activate a stock chip for `customer_id` against its oldest open delivered order.

    Returns the chip plus order number, assigned count, total and remaining
    slots. Nothing is written unless every layer passes.
    """
    uid = normalize_uid(uid)
    try:
        chip = lifecycle_service.lock_chip_by_uid(uid)
        # Stock chips pre-bound to another customer are not on this customer's whitelist
        if chip is None or chip.customer_id not in (None, customer_id):
            raise SecurityViolationError(UNKNOWN_UID, uid=uid)

        status = ChipStatus(chip.status)
        if status != ChipStatus.EN_STOCK:
            raise InvalidTransitionError(ChipAction.ACTIVATE, status)

        chip_security_service.verify_tag_authenticity(chip, chip_id, block4_data, block8_data)

        _check_subscription_and_quota(customer_id)

        fifo = order_service.find_fifo_order(customer_id)
        if fifo is None:
            raise BusinessRuleError("No delivered order with free slots for this customer")
        order, _ = fifo

        ctx = lifecycle_service.apply_in_transaction(
            chip,
            ChipAction.ACTIVATE,
            user_id=user_id,
            notes=f"Activated against order {order.order_number}",
            order=order,
        )
        db.session.commit()
    except SecurityViolationError as exc:
        db.session.rollback()
        _record_violation(exc, customer_id=customer_id, user_id=user_id)
        raise
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentModificationError("Order or chip was modified concurrently; scan again") from exc
    except BusinessRuleError as exc:
        db.session.rollback()
        current_app.logger.warning(
            "activation refused for customer %s uid %s: %s", customer_id, uid, exc
        )
        raise
    except Exception:
        db.session.rollback()
        raise

    security_event_service.log_security_event(
        user_id=user_id,
        customer_id=customer_id,
        event_type="CHIP_ACTIVATED",
        success=True,
        severity=SEVERITY_INFO,
        uid=chip.uid,
        chip_id=chip.chip_id,
    )
    current_app.logger.info(
        "chip %s activated for customer %s on order %s (%s/%s)",
        chip.uid, customer_id, ctx.outputs["order_number"],
        ctx.outputs["assigned"], ctx.outputs["total"],
    )
    return {
        "chip": chip.to_dict(),
        "order_number": ctx.outputs["order_number"],
        "assigned": ctx.outputs["assigned"],
        "total": ctx.outputs["total"],
        "remaining": ctx.outputs["remaining"],
        "order_full": ctx.outputs["order_full"],
    }


def _record_scan_rejection(
    reason: str,
    *,
    customer_id: int,
    uid: str,
    chip_id: str | None = None,
    user_id: int | None = None,
) -> None:
    security_event_service.log_security_event(
        user_id=user_id,
        customer_id=customer_id,
        event_type="CHIP_SCAN_REJECTED",
        success=False,
        severity=SEVERITY_CRITICAL,
        reason=reason,
        uid=uid,
        chip_id=chip_id,
    )


def validate_scan(customer_id: int, uid, *, user_id: int | None = None) -> dict:
    """
    Read-only check used by field scanners.

    The chip must belong to the customer, be ACTIVE and carry a checksum
    that still validates. Never touches the chip; an unknown UID or a
    checksum mismatch lands in security_events as CHIP_SCAN_REJECTED.
    """
    uid = normalize_uid(uid)
    chip = db.session.query(RfidChip).filter(RfidChip.uid == uid).first()
    if chip is None or chip.customer_id != customer_id:
        _record_scan_rejection(UNKNOWN_UID, customer_id=customer_id, uid=uid, user_id=user_id)
        return {"valid": False, "reason": "Chip not registered for this customer"}

    status = ChipStatus(chip.status)
    if status != ChipStatus.ACTIVE:
        return {"valid": False, "reason": f"Chip is not active ({status.value})", "chip": chip.to_summary()}

    if not chip_security_service.validate_checksum(chip.uid, chip.salt, chip.chip_id, chip.checksum):
        _record_scan_rejection(
            CHECKSUM_MISMATCH, customer_id=customer_id, uid=chip.uid, chip_id=chip.chip_id, user_id=user_id,
        )
        return {"valid": False, "reason": "Chip data failed validation", "chip": chip.to_summary()}

    return {
        "valid": True,
        "chip": chip.to_summary(),
        "control_point_id": chip.control_point_id,
    }
