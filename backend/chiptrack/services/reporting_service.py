# Overview: Read-only chip reporting: listings, status stats, CSV export, whitelist, stock figures.

from __future__ import annotations

import csv
import io

from sqlalchemy import func

from ..extensions import db
from ..models import ControlPoint, Order, RfidChip
from ..models.chips import ChipStatus
from ..validation import NotFoundError, ValidationError, normalize_uid
from . import order_service
from chiptrack.time_utils import to_export_text


MAX_PAGE_SIZE = 200

CSV_COLUMNS = [
    ("ChipId", lambda c: c.chip_id),
    ("UID", lambda c: c.uid),
    ("Status", lambda c: ChipStatus(c.status).value),
    ("CustomerId", lambda c: c.customer_id or ""),
    ("OrderId", lambda c: c.order_id or ""),
    ("ControlPointId", lambda c: c.control_point_id or ""),
    ("PackagingCode", lambda c: c.packaging_code or ""),
    ("ReceivedFromSupplier", lambda c: to_export_text(c.received_from_supplier_date)),
    ("Encoded", lambda c: to_export_text(c.encoding_date)),
    ("Shipped", lambda c: to_export_text(c.shipped_to_client_date)),
    ("Delivered", lambda c: to_export_text(c.delivered_to_client_date)),
    ("FirstScan", lambda c: to_export_text(c.first_scan_date)),
    ("LastScan", lambda c: to_export_text(c.last_scan_date)),
    ("Assigned", lambda c: to_export_text(c.assignment_date)),
    ("SavReturn", lambda c: to_export_text(c.sav_return_date)),
    ("SavReason", lambda c: c.sav_reason or ""),
    ("Deactivated", lambda c: to_export_text(c.deactivation_date)),
    ("CreatedAt", lambda c: to_export_text(c.created_at)),
]


def _scoped(query, customer_id: int | None):
    if customer_id is not None:
        query = query.filter(RfidChip.customer_id == customer_id)
    return query


def _counts_by_status(query) -> dict[str, int]:
    counts = {status.value: 0 for status in ChipStatus}
    for status, count in query.group_by(RfidChip.status).all():
        counts[ChipStatus(status).value] = count
    return counts


def parse_status(value) -> ChipStatus | None:
    if value in (None, ""):
        return None
    try:
        return ChipStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown status {value!r}")


def list_chips(
    *,
    customer_id: int | None = None,
    status=None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    status = parse_status(status)
    page = max(page, 1)
    per_page = min(max(per_page, 1), MAX_PAGE_SIZE)

    query = _scoped(db.session.query(RfidChip), customer_id)
    if status is not None:
        query = query.filter(RfidChip.status == status)

    total = query.count()
    chips = (
        query.order_by(RfidChip.created_at.desc(), RfidChip.chip_id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [chip.to_dict() for chip in chips],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


def stats_by_status(customer_id: int | None = None) -> dict:
    query = _scoped(db.session.query(RfidChip.status, func.count(RfidChip.id)), customer_id)
    by_status = _counts_by_status(query)
    total = sum(by_status.values())
    percentages = {
        status: round(count * 100 / total, 2) if total else 0.0
        for status, count in by_status.items()
    }
    return {
        "customer_id": customer_id,
        "total": total,
        "by_status": by_status,
        "percentages": percentages,
    }


def export_csv(customer_id: int | None = None) -> str:
    chips = _scoped(db.session.query(RfidChip), customer_id).order_by(RfidChip.chip_id.asc()).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([name for name, _ in CSV_COLUMNS])
    for chip in chips:
        writer.writerow([value(chip) for _, value in CSV_COLUMNS])
    return buffer.getvalue()


def whitelist(customer_id: int) -> list[dict]:
    """ACTIVE chips of a customer with their control point, for offline scanner caches."""
    rows = (
        db.session.query(RfidChip, ControlPoint)
        .outerjoin(ControlPoint, ControlPoint.id == RfidChip.control_point_id)
        .filter(RfidChip.customer_id == customer_id, RfidChip.status == ChipStatus.ACTIVE)
        .order_by(RfidChip.chip_id.asc())
        .all()
    )
    return [
        {
            "id": chip.id,
            "chip_id": chip.chip_id,
            "uid": chip.uid,
            "control_point_id": chip.control_point_id,
            "control_point_code": control_point.code if control_point else None,
            "control_point_name": control_point.name if control_point else None,
        }
        for chip, control_point in rows
    ]


def stock_statistics() -> dict:
    """
    Neutral stock figures for the warehouse.

    reserved = free slots of orders still flagged is_stock_reserved;
    available = neutral stock not spoken for by those orders.
    """
    neutral_stock = (
        db.session.query(func.count(RfidChip.id))
        .filter(RfidChip.status == ChipStatus.EN_STOCK, RfidChip.customer_id.is_(None))
        .scalar()
    ) or 0

    reserved_orders = db.session.query(Order).filter(Order.is_stock_reserved.is_(True)).all()
    counts = order_service.assigned_counts([o.id for o in reserved_orders])
    reserved = sum(max(o.chips_quantity - counts.get(o.id, 0), 0) for o in reserved_orders)

    by_status = _counts_by_status(db.session.query(RfidChip.status, func.count(RfidChip.id)))
    return {
        "neutral_stock": neutral_stock,
        "in_transit": by_status[ChipStatus.EN_TRANSIT.value],
        "in_workshop": by_status[ChipStatus.EN_ATELIER.value],
        "reserved": reserved,
        "available": max(neutral_stock - reserved, 0),
        "reserved_orders": len(reserved_orders),
        "by_status": by_status,
    }


def count_by_order(order_id: int, customer_id: int | None = None) -> dict:
    order = order_service.get_order(order_id, customer_id=customer_id)
    query = db.session.query(RfidChip.status, func.count(RfidChip.id)).filter(
        db.or_(RfidChip.order_id == order.id, RfidChip.client_order_id == order.id)
    )
    by_status = _counts_by_status(query)
    assigned = order_service.assigned_count(order.id)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "chips_quantity": order.chips_quantity,
        "assigned": assigned,
        "remaining": max(order.chips_quantity - assigned, 0),
        "total": sum(by_status.values()),
        "by_status": by_status,
    }


def check_exists(uid, customer_id: int | None = None) -> dict:
    chip = db.session.query(RfidChip).filter(RfidChip.uid == normalize_uid(uid)).first()
    if chip is None or (customer_id is not None and chip.customer_id != customer_id):
        return {"exists": False, "chip": None}
    return {"exists": True, "chip": chip.to_summary()}


def workshop_info(uid) -> dict:
    """What the encoding station may know about a tag: never any crypto material."""
    chip = db.session.query(RfidChip).filter(RfidChip.uid == normalize_uid(uid)).first()
    if chip is None:
        raise NotFoundError("Chip not found")
    return {
        "id": chip.id,
        "chip_id": chip.chip_id,
        "uid": chip.uid,
        "status": ChipStatus(chip.status).value,
        "is_encoded": chip.is_encoded,
    }
