from __future__ import annotations

from ..extensions import db
from chiptrack.time_utils import to_utc_z


class Customer(db.Model):
    """
    Multi-tenant root: every client company is a Customer.

    Chips, control points, client orders and client users all hang off
    customer_id. Staff users have no customer and act on neutral stock.

    SUBSCRIPTION:
    - is_active=False blocks delivery confirmation and chip activation
    - chip_limit caps INACTIVE + ACTIVE chips; NULL falls back to
      Config.DEFAULT_CHIP_LIMIT
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    subscription_plan = db.Column(db.String(32), nullable=False, default="free")
    chip_limit = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "subscription_plan": self.subscription_plan,
            "chip_limit": self.chip_limit,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ControlPoint(db.Model):
    """Field location a chip is physically attached to (assignment target)."""
    __tablename__ = "control_points"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "code", name="uq_control_points_customer_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    location_description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("control_points", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "code": self.code,
            "name": self.name,
            "location_description": self.location_description,
            "is_active": self.is_active,
        }
