# Overview: The chip state machine; every status change goes through apply_transition.

"""
RFID Chip Lifecycle Service

================================================================================
PURPOSE: One transition table, one code path for every chip status change
================================================================================

STATE MACHINE (ChipAction: sources -> target):

    RECEIVE_FROM_SUPPLIER    EN_TRANSIT                  -> EN_ATELIER
    ENCODE                   EN_ATELIER                  -> EN_STOCK
    SHIP_TO_CLIENT           EN_STOCK                    -> EN_LIVRAISON
    CONFIRM_DELIVERY         EN_LIVRAISON                -> LIVREE
    ACTIVATE                 EN_STOCK                    -> INACTIVE
    ASSIGN_TO_CONTROL_POINT  LIVREE, INACTIVE            -> ACTIVE
    DEACTIVATE               LIVREE, ACTIVE              -> INACTIVE
    REQUEST_SAV              ACTIVE                      -> RETOUR_SAV
    RECEIVE_SAV              RETOUR_SAV                  -> RECEPTION_SAV
    REPLACE                  RETOUR_SAV, RECEPTION_SAV   -> REMPLACEE
    CASCADE_ARCHIVE          REMPLACEE                   -> ARCHIVEE  (internal)
    ARCHIVE                  anything but ARCHIVEE       -> ARCHIVEE

EVERY TRANSITION:
1. Lock the chip row and check its status is a legal source
   (InvalidTransitionError carries the current status otherwise)
2. Run the guards registered for the action
3. Write status + timestamps, append exactly one history row
4. Flush (optimistic version check)
5. Run the effects registered for the action
6. Commit. Any failure rolls the whole unit back.

RULES (NON-NEGOTIABLE):
1. No code outside this module assigns RfidChip.status
2. History rows are never updated or deleted
3. Dated columns on RfidChip are copies of what history implies;
   audit_chip() re-derives them and reports drift

================================================================================
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import ControlPoint, Customer, RfidChip, RfidChipStatusHistory
from ..models.chips import ChipStatus
from ..validation import (
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    ValidationError,
    count_words,
    normalize_uid,
    parse_uuid,
)
from . import chip_security_service, order_service
from .concurrency import ConcurrentModificationError, lock_for_update
from chiptrack.time_utils import to_utc_z, utcnow


ARCHIVE_REASON_MIN_WORDS = 10


class ChipAction(str, Enum):
    RECEIVE_FROM_SUPPLIER = "RECEIVE_FROM_SUPPLIER"
    ENCODE = "ENCODE"
    SHIP_TO_CLIENT = "SHIP_TO_CLIENT"
    CONFIRM_DELIVERY = "CONFIRM_DELIVERY"
    ACTIVATE = "ACTIVATE"
    ASSIGN_TO_CONTROL_POINT = "ASSIGN_TO_CONTROL_POINT"
    DEACTIVATE = "DEACTIVATE"
    REQUEST_SAV = "REQUEST_SAV"
    RECEIVE_SAV = "RECEIVE_SAV"
    REPLACE = "REPLACE"
    CASCADE_ARCHIVE = "CASCADE_ARCHIVE"
    ARCHIVE = "ARCHIVE"


# Never requested directly; only produced by another transition's effect
INTERNAL_ACTIONS = frozenset({ChipAction.CASCADE_ARCHIVE})


@dataclass(frozen=True)
class Edge:
    action: ChipAction
    sources: frozenset
    target: ChipStatus
    stamps: tuple = ()        # set to the transition time on every traversal
    first_stamps: tuple = ()  # set only while still NULL


def _edge(action, sources, target, *, stamps=(), first_stamps=()) -> Edge:
    return Edge(action, frozenset(sources), target, tuple(stamps), tuple(first_stamps))


S = ChipStatus

TRANSITIONS: dict[ChipAction, Edge] = {
    edge.action: edge
    for edge in (
        _edge(ChipAction.RECEIVE_FROM_SUPPLIER, {S.EN_TRANSIT}, S.EN_ATELIER,
              stamps=("received_from_supplier_date",)),
        _edge(ChipAction.ENCODE, {S.EN_ATELIER}, S.EN_STOCK,
              stamps=("encoding_date",)),
        _edge(ChipAction.SHIP_TO_CLIENT, {S.EN_STOCK}, S.EN_LIVRAISON,
              stamps=("shipped_to_client_date",)),
        _edge(ChipAction.CONFIRM_DELIVERY, {S.EN_LIVRAISON}, S.LIVREE,
              stamps=("delivered_to_client_date",)),
        _edge(ChipAction.ACTIVATE, {S.EN_STOCK}, S.INACTIVE,
              stamps=("last_scan_date",), first_stamps=("first_scan_date",)),
        _edge(ChipAction.ASSIGN_TO_CONTROL_POINT, {S.LIVREE, S.INACTIVE}, S.ACTIVE,
              stamps=("assignment_date", "last_scan_date"), first_stamps=("first_scan_date",)),
        _edge(ChipAction.DEACTIVATE, {S.LIVREE, S.ACTIVE}, S.INACTIVE,
              stamps=("deactivation_date",)),
        _edge(ChipAction.REQUEST_SAV, {S.ACTIVE}, S.RETOUR_SAV,
              stamps=("sav_return_date",)),
        _edge(ChipAction.RECEIVE_SAV, {S.RETOUR_SAV}, S.RECEPTION_SAV),
        _edge(ChipAction.REPLACE, {S.RETOUR_SAV, S.RECEPTION_SAV}, S.REMPLACEE),
        _edge(ChipAction.CASCADE_ARCHIVE, {S.REMPLACEE}, S.ARCHIVEE),
        _edge(ChipAction.ARCHIVE, set(ChipStatus) - {S.ARCHIVEE}, S.ARCHIVEE),
    )
}

TIMELINE_FIELDS = tuple(sorted({
    name
    for edge in TRANSITIONS.values()
    for name in edge.stamps + edge.first_stamps
}))


class InvalidTransitionError(ValueError):
    """The chip's current status is not a legal source for the requested action."""

    def __init__(self, action: ChipAction, current_status: ChipStatus):
        self.action = ChipAction(action)
        self.current_status = ChipStatus(current_status)
        allowed = ", ".join(sorted(s.value for s in TRANSITIONS[self.action].sources))
        super().__init__(
            f"Cannot {self.action.value} a chip in status {self.current_status.value} "
            f"(allowed from: {allowed})"
        )


@dataclass
class TransitionContext:
    """Everything guards and effects may read or write for one transition."""
    chip: RfidChip
    action: ChipAction
    now: datetime
    user_id: int | None = None
    notes: str | None = None
    params: dict = field(default_factory=dict)
    # Objects resolved by guards and reused by effects (orders, control points...)
    resolved: dict = field(default_factory=dict)
    # Data handed back to the caller (warranty order, tag payload...)
    outputs: dict = field(default_factory=dict)
    history: list = field(default_factory=list)


GuardFn = Callable[[TransitionContext], None]
EffectFn = Callable[[TransitionContext], None]

GUARDS: dict[ChipAction, list[GuardFn]] = defaultdict(list)
EFFECTS: dict[ChipAction, list[EffectFn]] = defaultdict(list)


def guard(action: ChipAction):
    def register(fn: GuardFn) -> GuardFn:
        GUARDS[action].append(fn)
        return fn
    return register


def effect(action: ChipAction):
    def register(fn: EffectFn) -> EffectFn:
        EFFECTS[action].append(fn)
        return fn
    return register


# =============================================================================
# Pure queries over the transition table
# =============================================================================

def is_legal_step(from_status, to_status) -> bool:
    from_status, to_status = ChipStatus(from_status), ChipStatus(to_status)
    return any(
        from_status in edge.sources and edge.target == to_status
        for edge in TRANSITIONS.values()
    )


def allowed_actions(status) -> list[ChipAction]:
    status = ChipStatus(status)
    return [
        action for action, edge in TRANSITIONS.items()
        if status in edge.sources and action not in INTERNAL_ACTIONS
    ]


def validate_history_walk(rows) -> list[str]:
    """
    Check that history rows form a walk over TRANSITIONS from EN_TRANSIT.

    Returns a list of problems; empty means the walk is valid.
    """
    problems = []
    previous = ChipStatus.EN_TRANSIT
    for index, row in enumerate(rows):
        from_status, to_status = ChipStatus(row.from_status), ChipStatus(row.to_status)
        if from_status != previous:
            problems.append(
                f"row {index}: starts at {from_status.value}, expected {previous.value}"
            )
        try:
            edge = TRANSITIONS[ChipAction(row.action)]
        except ValueError:
            problems.append(f"row {index}: unknown action {row.action!r}")
        else:
            if from_status not in edge.sources or to_status != edge.target:
                problems.append(
                    f"row {index}: {row.action} does not lead {from_status.value} -> {to_status.value}"
                )
        previous = to_status
    return problems


def derive_timeline(rows) -> dict[str, datetime | None]:
    """Recompute every dated chip column from history alone."""
    timeline: dict[str, datetime | None] = {name: None for name in TIMELINE_FIELDS}
    for row in rows:
        try:
            edge = TRANSITIONS[ChipAction(row.action)]
        except ValueError:
            continue
        for name in edge.stamps:
            timeline[name] = row.changed_at
        for name in edge.first_stamps:
            if timeline[name] is None:
                timeline[name] = row.changed_at
    return timeline


def _history_rows(chip_pk: str) -> list[RfidChipStatusHistory]:
    return (
        db.session.query(RfidChipStatusHistory)
        .filter(RfidChipStatusHistory.rfid_chip_id == chip_pk)
        .order_by(RfidChipStatusHistory.id.asc())
        .all()
    )


def audit_chip(chip: RfidChip) -> dict:
    """
    Reconcile a chip against its history.

    Reports walk problems, status drift (last to_status vs current status),
    dated columns that disagree with the history-derived timeline, and
    whether the stored checksum still validates.
    """
    rows = _history_rows(chip.id)
    walk_issues = validate_history_walk(rows)
    expected_status = ChipStatus(rows[-1].to_status) if rows else ChipStatus.EN_TRANSIT

    derived = derive_timeline(rows)
    mismatches = []
    for name in TIMELINE_FIELDS:
        stored = getattr(chip, name)
        if stored != derived[name]:
            mismatches.append({
                "field": name,
                "stored": to_utc_z(stored),
                "derived": to_utc_z(derived[name]),
            })

    checksum_valid = None
    if chip.is_encoded:
        checksum_valid = chip_security_service.validate_checksum(
            chip.uid, chip.salt, chip.chip_id, chip.checksum
        )

    status_matches = expected_status == ChipStatus(chip.status)
    return {
        "id": chip.id,
        "chip_id": chip.chip_id,
        "uid": chip.uid,
        "status": ChipStatus(chip.status).value,
        "history_length": len(rows),
        "walk_valid": not walk_issues,
        "walk_issues": walk_issues,
        "status_matches_history": status_matches,
        "timestamp_mismatches": mismatches,
        "checksum_valid": checksum_valid,
        "is_consistent": (
            not walk_issues and status_matches and not mismatches and checksum_valid is not False
        ),
    }


# =============================================================================
# Loading
# =============================================================================

def _check_owner(chip: RfidChip | None, owner_customer_id: int | None) -> RfidChip:
    # Foreign chips look exactly like missing ones
    if chip is None or (owner_customer_id is not None and chip.customer_id != owner_customer_id):
        raise NotFoundError("Chip not found")
    return chip


def get_chip(chip_pk, *, owner_customer_id: int | None = None) -> RfidChip:
    chip = db.session.get(RfidChip, parse_uuid(chip_pk, "id"))
    return _check_owner(chip, owner_customer_id)


def lock_chip(chip_pk, *, owner_customer_id: int | None = None) -> RfidChip:
    chip = lock_for_update(
        db.session.query(RfidChip).filter(RfidChip.id == parse_uuid(chip_pk, "id"))
    ).first()
    return _check_owner(chip, owner_customer_id)


def lock_chip_by_uid(uid: str) -> RfidChip | None:
    return lock_for_update(
        db.session.query(RfidChip).filter(RfidChip.uid == normalize_uid(uid))
    ).first()


def get_status_history(chip_pk, *, owner_customer_id: int | None = None) -> list[RfidChipStatusHistory]:
    chip = get_chip(chip_pk, owner_customer_id=owner_customer_id)
    return _history_rows(chip.id)


# =============================================================================
# Engine
# =============================================================================

def apply_in_transaction(
    chip: RfidChip,
    action: ChipAction,
    *,
    user_id: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
    **params: Any,
) -> TransitionContext:
    """
    Apply one transition to an already-locked chip without committing.

    Callers own the transaction: commit on success, roll back on any error.
    """
    action = ChipAction(action)
    edge = TRANSITIONS[action]
    current = ChipStatus(chip.status)
    if current not in edge.sources:
        raise InvalidTransitionError(action, current)

    ctx = TransitionContext(
        chip=chip,
        action=action,
        now=now or utcnow(),
        user_id=user_id,
        notes=notes,
        params=params,
    )

    for check in GUARDS[action]:
        check(ctx)

    chip.status = edge.target
    for name in edge.stamps:
        setattr(chip, name, ctx.now)
    for name in edge.first_stamps:
        if getattr(chip, name) is None:
            setattr(chip, name, ctx.now)

    row = RfidChipStatusHistory(
        rfid_chip_id=chip.id,
        action=action.value,
        from_status=current,
        to_status=edge.target,
        changed_at=ctx.now,
        changed_by_user_id=user_id,
        notes=ctx.notes,
    )
    db.session.add(row)
    ctx.history.append(row)
    db.session.flush()

    for produce in EFFECTS[action]:
        produce(ctx)
    db.session.flush()

    return ctx


def _run(chip: RfidChip, action: ChipAction, **kwargs) -> TransitionContext:
    from_status = ChipStatus(chip.status)
    try:
        ctx = apply_in_transaction(chip, action, **kwargs)
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentModificationError("Chip was modified concurrently; reload and retry") from exc
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "chip %s (%s) %s: %s -> %s by user %s",
        chip.id, chip.uid, ChipAction(action).value, from_status.value,
        ChipStatus(chip.status).value, kwargs.get("user_id"),
    )
    return ctx


def _reject_internal(action: ChipAction) -> ChipAction:
    action = ChipAction(action)
    if action in INTERNAL_ACTIONS:
        raise ValidationError(f"{action.value} cannot be requested directly")
    return action


def apply_transition(
    chip_pk,
    action: ChipAction,
    *,
    owner_customer_id: int | None = None,
    **kwargs: Any,
) -> TransitionContext:
    """
    Lock the chip, apply `action`, commit.

    owner_customer_id restricts the call to that customer's chips (client
    callers). Staff callers pass None.
    """
    action = _reject_internal(action)
    try:
        chip = lock_chip(chip_pk, owner_customer_id=owner_customer_id)
    except Exception:
        db.session.rollback()
        raise
    return _run(chip, action, **kwargs)


def apply_transition_by_uid(uid: str, action: ChipAction, **kwargs: Any) -> TransitionContext:
    action = _reject_internal(action)
    try:
        chip = lock_chip_by_uid(uid)
    except Exception:
        db.session.rollback()
        raise
    if chip is None:
        db.session.rollback()
        raise NotFoundError("Chip not found")
    return _run(chip, action, **kwargs)


# =============================================================================
# Guards and effects
# =============================================================================

@guard(ChipAction.RECEIVE_FROM_SUPPLIER)
def _supplier_order_matches(ctx: TransitionContext) -> None:
    expected = ctx.params.get("supplier_order_id")
    if expected is not None and ctx.chip.supplier_order_id not in (None, expected):
        raise BusinessRuleError("Chip does not belong to this supplier order")


@effect(ChipAction.RECEIVE_FROM_SUPPLIER)
def _bind_supplier_order(ctx: TransitionContext) -> None:
    expected = ctx.params.get("supplier_order_id")
    if expected is not None and ctx.chip.supplier_order_id is None:
        ctx.chip.supplier_order_id = expected


@guard(ChipAction.ENCODE)
def _not_already_encoded(ctx: TransitionContext) -> None:
    if ctx.chip.salt or ctx.chip.checksum:
        raise ConflictError("Chip is already encoded")


@effect(ChipAction.ENCODE)
def _generate_crypto_material(ctx: TransitionContext) -> None:
    chip = ctx.chip
    chip.salt = chip_security_service.generate_salt()
    chip.checksum = chip_security_service.generate_checksum(chip.uid, chip.salt, chip.chip_id)
    ctx.outputs["tag_payload"] = chip_security_service.tag_payload(chip)


@guard(ChipAction.SHIP_TO_CLIENT)
def _client_order_shippable(ctx: TransitionContext) -> None:
    order_id = ctx.params.get("client_order_id")
    if order_id is None:
        raise ValidationError("client_order_id is required")
    order = order_service.get_order(order_id)
    if order.status == order_service.ORDER_STATUS_CANCELLED:
        raise BusinessRuleError("Cannot ship chips for a cancelled order")
    ctx.resolved["order"] = order


@effect(ChipAction.SHIP_TO_CLIENT)
def _bind_client_order(ctx: TransitionContext) -> None:
    order = ctx.resolved["order"]
    chip = ctx.chip
    chip.customer_id = order.customer_id
    chip.client_order_id = order.id
    chip.packaging_code = ctx.params.get("packaging_code") or order_service.generate_packaging_code(ctx.now)
    order_service.reserve_for_shipment(order)
    ctx.outputs["packaging_code"] = chip.packaging_code


@guard(ChipAction.CONFIRM_DELIVERY)
def _packaging_code_matches(ctx: TransitionContext) -> None:
    submitted = ctx.params.get("packaging_code")
    if not isinstance(submitted, str) or not submitted.strip():
        raise ValidationError("packaging_code is required")
    if submitted.strip().upper() != (ctx.chip.packaging_code or "").upper():
        raise ValidationError("Packaging code does not match this chip")


@guard(ChipAction.CONFIRM_DELIVERY)
def _subscription_active(ctx: TransitionContext) -> None:
    customer = db.session.get(Customer, ctx.chip.customer_id) if ctx.chip.customer_id else None
    if customer is None or not customer.is_active:
        raise BusinessRuleError("Customer subscription is not active")


@guard(ChipAction.ACTIVATE)
def _activation_order_given(ctx: TransitionContext) -> None:
    if ctx.params.get("order") is None:
        raise ValidationError("Activation requires a target order")


@effect(ChipAction.ACTIVATE)
def _bind_activation_order(ctx: TransitionContext) -> None:
    order = ctx.params["order"]
    chip = ctx.chip
    chip.customer_id = order.customer_id
    chip.order_id = order.id
    chip.client_order_id = order.id
    db.session.flush()

    assigned = order_service.assigned_count(order.id)
    order_service.record_assignment(order, assigned_after=assigned, now=ctx.now)
    ctx.outputs.update({
        "order_number": order.order_number,
        "assigned": assigned,
        "total": order.chips_quantity,
        "remaining": max(order.chips_quantity - assigned, 0),
        "order_full": assigned >= order.chips_quantity,
    })


@guard(ChipAction.ASSIGN_TO_CONTROL_POINT)
def _control_point_usable(ctx: TransitionContext) -> None:
    control_point_id = ctx.params.get("control_point_id")
    if control_point_id is None:
        raise ValidationError("control_point_id is required")
    control_point = db.session.get(ControlPoint, control_point_id)
    if control_point is None:
        raise NotFoundError("Control point not found")
    if not control_point.is_active:
        raise BusinessRuleError("Control point is not active")
    if control_point.customer_id != ctx.chip.customer_id:
        raise BusinessRuleError("Control point belongs to another customer")
    ctx.resolved["control_point"] = control_point


@effect(ChipAction.ASSIGN_TO_CONTROL_POINT)
def _bind_control_point(ctx: TransitionContext) -> None:
    ctx.chip.control_point_id = ctx.resolved["control_point"].id


@effect(ChipAction.DEACTIVATE)
def _unbind_control_point(ctx: TransitionContext) -> None:
    ctx.chip.control_point_id = None


@guard(ChipAction.REQUEST_SAV)
def _sav_reason_given(ctx: TransitionContext) -> None:
    reason = ctx.params.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason is required")
    if ctx.chip.customer_id is None:
        raise BusinessRuleError("Only chips owned by a customer can be returned")
    ctx.notes = ctx.notes or reason.strip()


@effect(ChipAction.REQUEST_SAV)
def _open_warranty_order(ctx: TransitionContext) -> None:
    reason = ctx.params["reason"].strip()
    ctx.chip.sav_reason = reason
    order = order_service.create_warranty_order(
        ctx.chip.customer_id, chip_uid=ctx.chip.uid, reason=reason, now=ctx.now
    )
    ctx.outputs["warranty_order"] = order


@guard(ChipAction.REPLACE)
def _replacement_eligible(ctx: TransitionContext) -> None:
    raw = ctx.params.get("replacement_chip_id")
    if raw is None:
        raise ValidationError("replacement_chip_id is required")
    replacement_pk = parse_uuid(raw, "replacement_chip_id")
    if replacement_pk == ctx.chip.id:
        raise ValidationError("A chip cannot replace itself")

    replacement = lock_for_update(
        db.session.query(RfidChip).filter(RfidChip.id == replacement_pk)
    ).first()
    if replacement is None:
        raise NotFoundError("Replacement chip not found")
    if replacement.customer_id != ctx.chip.customer_id:
        raise BusinessRuleError("Replacement chip belongs to another customer")
    if ChipStatus(replacement.status) in (ChipStatus.ARCHIVEE, ChipStatus.REMPLACEE):
        raise BusinessRuleError("Replacement chip is retired")
    ctx.resolved["replacement"] = replacement


@effect(ChipAction.REPLACE)
def _link_replacement(ctx: TransitionContext) -> None:
    replacement = ctx.resolved["replacement"]
    ctx.chip.replacement_chip_id = replacement.id
    ctx.outputs["replacement_chip"] = replacement
    if ChipStatus(replacement.status) == ChipStatus.LIVREE:
        nested = apply_in_transaction(
            ctx.chip,
            ChipAction.CASCADE_ARCHIVE,
            user_id=ctx.user_id,
            notes=f"Replaced by delivered chip {replacement.chip_id}",
            now=ctx.now,
        )
        ctx.history.extend(nested.history)


@guard(ChipAction.ARCHIVE)
def _archive_reason_given(ctx: TransitionContext) -> None:
    reason = ctx.params.get("reason")
    if not isinstance(reason, str):
        raise ValidationError("reason is required")
    if count_words(reason) < ARCHIVE_REASON_MIN_WORDS:
        raise ValidationError(
            f"Archiving requires a reason of at least {ARCHIVE_REASON_MIN_WORDS} words"
        )
    ctx.notes = reason.strip()
