from __future__ import annotations

from ..extensions import db
from chiptrack.time_utils import to_utc_z


ORDER_STATUSES = {"PENDING", "PAID", "SHIPPED", "DELIVERED", "CANCELLED"}


class Order(db.Model):
    """
    Client order (owned by the ordering/payment side of the platform).

    The chip engine only reads chips_quantity/status/delivered_at, flips
    is_stock_reserved when every slot has been activated, and creates
    zero-amount warranty orders for SAV returns.

    version_id is bumped on every FIFO assignment so two activations racing
    for the last free slot cannot both commit.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_status_delivered", "customer_id", "status", "delivered_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    order_number = db.Column(db.String(64), nullable=False, unique=True)
    chips_quantity = db.Column(db.Integer, nullable=False, default=10)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    delivery_address = db.Column(db.String(255), nullable=True)

    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # True while chips are physically out of neutral stock for this order
    is_stock_reserved = db.Column(db.Boolean, nullable=False, default=False)
    is_warranty = db.Column(db.Boolean, nullable=False, default=False)
    last_assignment_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_number": self.order_number,
            "chips_quantity": self.chips_quantity,
            "total_amount_cents": self.total_amount_cents,
            "status": self.status,
            "delivered_at": to_utc_z(self.delivered_at),
            "is_stock_reserved": self.is_stock_reserved,
            "is_warranty": self.is_warranty,
            "created_at": to_utc_z(self.created_at),
        }


class SupplierOrder(db.Model):
    """Purchase of blank chips from a supplier; bulk imports are checked against it."""
    __tablename__ = "supplier_orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True)
    supplier_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")

    ordered_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship(
        "SupplierOrderLine",
        backref="supplier_order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SupplierOrderLine.id",
    )

    @property
    def expected_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_name": self.supplier_name,
            "status": self.status,
            "expected_quantity": self.expected_quantity,
            "lines": [line.to_dict() for line in self.lines],
        }


class SupplierOrderLine(db.Model):
    __tablename__ = "supplier_order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_supplier_order_lines_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_order_id = db.Column(db.Integer, db.ForeignKey("supplier_orders.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": self.quantity,
        }
