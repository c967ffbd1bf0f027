# Overview: The slice of the ordering side the chip engine depends on.

"""
Order Collaborator

Orders belong to the ordering/payment side of the platform. The chip
engine only:
- reads client orders (quantity, status, delivery date)
- picks the oldest delivered order with free slots for activation (FIFO)
- releases the stock reservation once an order's slots are all used
- creates zero-amount warranty orders for SAV returns
"""

from __future__ import annotations

import secrets
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Order, RfidChip
from ..validation import NotFoundError
from chiptrack.time_utils import day_stamp, utcnow


ORDER_STATUS_DELIVERED = "DELIVERED"
ORDER_STATUS_CANCELLED = "CANCELLED"
ORDER_STATUS_PENDING = "PENDING"

WARRANTY_PREFIX = "WARRANTY"
PACKAGING_PREFIX = "PKG"
WARRANTY_DELIVERY_ADDRESS = "SAV"


def _suffix() -> str:
    return secrets.token_hex(4).upper()


def generate_packaging_code(now: datetime | None = None) -> str:
    """PKG-YYYYMMDD-XXXXXXXX"""
    return f"{PACKAGING_PREFIX}-{day_stamp(now)}-{_suffix()}"


def get_order(order_id: int, *, customer_id: int | None = None) -> Order:
    order = db.session.get(Order, order_id)
    if not order or (customer_id is not None and order.customer_id != customer_id):
        raise NotFoundError("Order not found")
    return order


def assigned_counts(order_ids: list[int]) -> dict[int, int]:
    """Chips bound to each order through activation (order_id)."""
    if not order_ids:
        return {}
    rows = (
        db.session.query(RfidChip.order_id, func.count(RfidChip.id))
        .filter(RfidChip.order_id.in_(order_ids))
        .group_by(RfidChip.order_id)
        .all()
    )
    return {order_id: count for order_id, count in rows}


def assigned_count(order_id: int) -> int:
    return assigned_counts([order_id]).get(order_id, 0)


def find_fifo_order(customer_id: int) -> tuple[Order, int] | None:
    """
    Oldest delivered order of the customer that still has a free slot.

    Ordered by delivered_at (oldest first, undated last), ties broken by id.
    Returns (order, chips already assigned) or None.
    """
    orders = (
        db.session.query(Order)
        .filter(
            Order.customer_id == customer_id,
            Order.status == ORDER_STATUS_DELIVERED,
            Order.is_warranty.is_(False),
        )
        .order_by(Order.delivered_at.is_(None), Order.delivered_at.asc(), Order.id.asc())
        .all()
    )
    counts = assigned_counts([o.id for o in orders])
    for order in orders:
        assigned = counts.get(order.id, 0)
        if assigned < order.chips_quantity:
            return order, assigned
    return None


def record_assignment(order: Order, *, assigned_after: int, now: datetime) -> None:
    """
    Touch the order for one more assigned chip.

    Writing last_assignment_at bumps the order's version_id, so two
    activations racing for the last slot cannot both commit.
    """
    order.last_assignment_at = now
    if assigned_after >= order.chips_quantity:
        order.is_stock_reserved = False


def reserve_for_shipment(order: Order) -> None:
    order.is_stock_reserved = True


def create_warranty_order(customer_id: int, *, chip_uid: str, reason: str, now: datetime | None = None) -> Order:
    """Zero-amount, one-chip PENDING order that tracks an SAV replacement."""
    now = now or utcnow()
    order_number = f"{WARRANTY_PREFIX}-{day_stamp(now)}-{_suffix()}"
    while db.session.query(Order.id).filter(Order.order_number == order_number).first():
        order_number = f"{WARRANTY_PREFIX}-{day_stamp(now)}-{_suffix()}"

    order = Order(
        customer_id=customer_id,
        order_number=order_number,
        chips_quantity=1,
        total_amount_cents=0,
        status=ORDER_STATUS_PENDING,
        delivery_address=WARRANTY_DELIVERY_ADDRESS,
        is_warranty=True,
        notes=f"SAV return of chip {chip_uid}: {reason}",
    )
    db.session.add(order)
    db.session.flush()
    return order
