from __future__ import annotations

import uuid
from enum import Enum

from ..extensions import db
from chiptrack.time_utils import to_utc_z


class ChipStatus(str, Enum):
    """
    Closed set of lifecycle states. Only lifecycle_service may change a
    chip's status; see TRANSITIONS there for the legal edges.
    """
    EN_TRANSIT = "EN_TRANSIT"        # imported from supplier paperwork, not yet received
    EN_ATELIER = "EN_ATELIER"        # received in the workshop, not encoded
    EN_STOCK = "EN_STOCK"            # encoded, neutral stock
    EN_LIVRAISON = "EN_LIVRAISON"    # shipped to a client order
    LIVREE = "LIVREE"                # delivery confirmed by the client
    INACTIVE = "INACTIVE"            # owned by a client, not on a control point
    ACTIVE = "ACTIVE"                # assigned to a control point
    RETOUR_SAV = "RETOUR_SAV"        # returned under warranty
    RECEPTION_SAV = "RECEPTION_SAV"  # received by the service center
    REMPLACEE = "REMPLACEE"          # replaced by another chip
    ARCHIVEE = "ARCHIVEE"            # terminal


# Chips that count against a customer's subscription ceiling
QUOTA_STATUSES = frozenset({ChipStatus.INACTIVE, ChipStatus.ACTIVE})


def _status_type(name: str) -> db.Enum:
    return db.Enum(
        ChipStatus,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda enum_cls: [member.value for member in enum_cls],
    )


def _new_uuid() -> str:
    return str(uuid.uuid4())


class RfidChip(db.Model):
    """
    Authoritative record of one physical chip.

    IDENTITY:
    - id:      internal UUID, written to tag block 1 by the encoder
    - chip_id: generated LC-YYYY-MM-NNNNN code (16 ASCII chars), written to
               protected block 4
    - uid:     factory-burned, globally unique, never reused

    CRYPTO:
    - salt/checksum are NULL until the ENCODE transition and never NULL after
    - checksum is the exact 32-char hex content of protected block 8
    - the per-chip sector key is derived on demand and never stored

    The dated columns are denormalised copies of the status history.
    lifecycle_service.audit_chip() re-derives them from history.
    """
    __tablename__ = "rfid_chips"
    __table_args__ = (
        db.Index("ix_rfid_chips_customer_status", "customer_id", "status"),
        db.Index("ix_rfid_chips_order", "order_id"),
        db.CheckConstraint(
            "(salt IS NULL AND checksum IS NULL) OR (salt IS NOT NULL AND checksum IS NOT NULL)",
            name="ck_rfid_chips_crypto_pair",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    chip_id = db.Column(db.String(32), nullable=False, unique=True)
    uid = db.Column(db.String(64), nullable=False, unique=True, index=True)

    salt = db.Column(db.String(64), nullable=True)
    checksum = db.Column(db.String(64), nullable=True)

    status = db.Column(_status_type("rfid_chip_status"), nullable=False, default=ChipStatus.EN_TRANSIT, index=True)

    # Ownership
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    supplier_order_id = db.Column(db.Integer, db.ForeignKey("supplier_orders.id"), nullable=True, index=True)
    client_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    control_point_id = db.Column(db.Integer, db.ForeignKey("control_points.id"), nullable=True)
    packaging_code = db.Column(db.String(64), nullable=True, index=True)

    # Lifecycle timestamps (one per transition)
    received_from_supplier_date = db.Column(db.DateTime(timezone=True), nullable=True)
    encoding_date = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_to_client_date = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_to_client_date = db.Column(db.DateTime(timezone=True), nullable=True)
    first_scan_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_scan_date = db.Column(db.DateTime(timezone=True), nullable=True)
    assignment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    sav_return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    deactivation_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # SAV
    sav_reason = db.Column(db.Text, nullable=True)
    replacement_chip_id = db.Column(db.String(36), db.ForeignKey("rfid_chips.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("rfid_chips", lazy=True))
    order = db.relationship("Order", foreign_keys=[order_id])
    client_order = db.relationship("Order", foreign_keys=[client_order_id])
    supplier_order = db.relationship("SupplierOrder", backref=db.backref("rfid_chips", lazy=True))
    control_point = db.relationship("ControlPoint", backref=db.backref("rfid_chips", lazy=True))
    replacement_chip = db.relationship("RfidChip", remote_side=[id], foreign_keys=[replacement_chip_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_encoded(self) -> bool:
        return bool(self.salt) and bool(self.checksum)

    def __repr__(self) -> str:
        return f"<RfidChip id={self.id} chip_id={self.chip_id!r} uid={self.uid!r} status={self.status}>"

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "chip_id": self.chip_id,
            "uid": self.uid,
            "status": ChipStatus(self.status).value,
        }

    def to_dict(self) -> dict:
        # salt/checksum never leave the server through this projection
        return {
            "id": self.id,
            "chip_id": self.chip_id,
            "uid": self.uid,
            "status": ChipStatus(self.status).value,
            "is_encoded": self.is_encoded,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "supplier_order_id": self.supplier_order_id,
            "client_order_id": self.client_order_id,
            "control_point_id": self.control_point_id,
            "packaging_code": self.packaging_code,
            "received_from_supplier_date": to_utc_z(self.received_from_supplier_date),
            "encoding_date": to_utc_z(self.encoding_date),
            "shipped_to_client_date": to_utc_z(self.shipped_to_client_date),
            "delivered_to_client_date": to_utc_z(self.delivered_to_client_date),
            "first_scan_date": to_utc_z(self.first_scan_date),
            "last_scan_date": to_utc_z(self.last_scan_date),
            "assignment_date": to_utc_z(self.assignment_date),
            "sav_return_date": to_utc_z(self.sav_return_date),
            "deactivation_date": to_utc_z(self.deactivation_date),
            "sav_reason": self.sav_reason,
            "replacement_chip_id": self.replacement_chip_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class RfidChipStatusHistory(db.Model):
    """
    One row per successful transition.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    The sequence of (from_status, to_status) pairs for a chip is a walk over
    lifecycle_service.TRANSITIONS starting at EN_TRANSIT.
    """
    __tablename__ = "rfid_chip_status_history"
    __table_args__ = (
        db.Index("ix_rfid_chip_status_history_chip_changed", "rfid_chip_id", "changed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    rfid_chip_id = db.Column(db.String(36), db.ForeignKey("rfid_chips.id"), nullable=False, index=True)

    action = db.Column(db.String(32), nullable=False)
    from_status = db.Column(_status_type("rfid_chip_history_from_status"), nullable=False)
    to_status = db.Column(_status_type("rfid_chip_history_to_status"), nullable=False)

    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    chip = db.relationship(
        "RfidChip",
        backref=db.backref("status_history", lazy=True, order_by="RfidChipStatusHistory.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rfid_chip_id": self.rfid_chip_id,
            "action": self.action,
            "from_status": ChipStatus(self.from_status).value,
            "to_status": ChipStatus(self.to_status).value,
            "changed_at": to_utc_z(self.changed_at),
            "changed_by_user_id": self.changed_by_user_id,
            "notes": self.notes,
        }
