"""Initial schema: tenants, auth, orders, RFID chip registry and history

Revision ID: 20261018_rfid_chips
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_rfid_chips"
down_revision = None
branch_labels = None
depends_on = None


CHIP_STATUSES = (
    "EN_TRANSIT", "EN_ATELIER", "EN_STOCK", "EN_LIVRAISON", "LIVREE",
    "INACTIVE", "ACTIVE", "RETOUR_SAV", "RECEPTION_SAV", "REMPLACEE", "ARCHIVEE",
)


def _status_check(column: str, name: str) -> sa.CheckConstraint:
    values = ", ".join(f"'{s}'" for s in CHIP_STATUSES)
    return sa.CheckConstraint(f"{column} IN ({values})", name=name)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(32), nullable=True),
        sa.Column("subscription_plan", sa.String(32), nullable=False, server_default="free"),
        sa.Column("chip_limit", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_customers_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_is_active", ["is_active"], unique=False)

    op.create_table(
        "control_points",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("location_description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("customer_id", "code", name="uq_control_points_customer_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("control_points", schema=None) as batch_op:
        batch_op.create_index("ix_control_points_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("user_type", sa.String(16), nullable=False, server_default="CLIENT"),
        sa.Column("is_superadmin", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(user_type = 'STAFF' AND customer_id IS NULL) OR "
            "(user_type = 'CLIENT' AND customer_id IS NOT NULL)",
            name="ck_users_type_customer",
        ),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_username", ["username"], unique=True)
        batch_op.create_index("ix_users_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(255), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)
        batch_op.create_index("ix_session_tokens_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_session_tokens_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("chips_quantity", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("delivery_address", sa.String(255), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_stock_reserved", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_warranty", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_assignment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index(
            "ix_orders_customer_status_delivered", ["customer_id", "status", "delivered_at"], unique=False
        )

    op.create_table(
        "supplier_orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
        sa.Column("ordered_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number", name="uq_supplier_orders_order_number"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "supplier_order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("supplier_order_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["supplier_order_id"], ["supplier_orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 0", name="ck_supplier_order_lines_quantity"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("supplier_order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_supplier_order_lines_supplier_order_id", ["supplier_order_id"], unique=False)

    op.create_table(
        "rfid_chips",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("chip_id", sa.String(32), nullable=False),
        sa.Column("uid", sa.String(64), nullable=False),
        sa.Column("salt", sa.String(64), nullable=True),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="EN_TRANSIT"),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("supplier_order_id", sa.Integer(), nullable=True),
        sa.Column("client_order_id", sa.Integer(), nullable=True),
        sa.Column("control_point_id", sa.Integer(), nullable=True),
        sa.Column("packaging_code", sa.String(64), nullable=True),
        sa.Column("received_from_supplier_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("encoding_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_to_client_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_to_client_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_scan_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_scan_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assignment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sav_return_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sav_reason", sa.Text(), nullable=True),
        sa.Column("replacement_chip_id", sa.String(36), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["client_order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["supplier_order_id"], ["supplier_orders.id"]),
        sa.ForeignKeyConstraint(["control_point_id"], ["control_points.id"]),
        sa.ForeignKeyConstraint(["replacement_chip_id"], ["rfid_chips.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chip_id", name="uq_rfid_chips_chip_id"),
        sa.CheckConstraint(
            "(salt IS NULL AND checksum IS NULL) OR (salt IS NOT NULL AND checksum IS NOT NULL)",
            name="ck_rfid_chips_crypto_pair",
        ),
        _status_check("status", "rfid_chip_status"),
    )
    with op.batch_alter_table("rfid_chips", schema=None) as batch_op:
        batch_op.create_index("ix_rfid_chips_uid", ["uid"], unique=True)
        batch_op.create_index("ix_rfid_chips_status", ["status"], unique=False)
        batch_op.create_index("ix_rfid_chips_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_rfid_chips_supplier_order_id", ["supplier_order_id"], unique=False)
        batch_op.create_index("ix_rfid_chips_packaging_code", ["packaging_code"], unique=False)
        batch_op.create_index("ix_rfid_chips_customer_status", ["customer_id", "status"], unique=False)
        batch_op.create_index("ix_rfid_chips_order", ["order_id"], unique=False)

    op.create_table(
        "rfid_chip_status_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("rfid_chip_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=False),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["rfid_chip_id"], ["rfid_chips.id"]),
        sa.ForeignKeyConstraint(["changed_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        _status_check("from_status", "rfid_chip_history_from_status"),
        _status_check("to_status", "rfid_chip_history_to_status"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("rfid_chip_status_history", schema=None) as batch_op:
        batch_op.create_index("ix_rfid_chip_status_history_rfid_chip_id", ["rfid_chip_id"], unique=False)
        batch_op.create_index("ix_rfid_chip_status_history_changed_at", ["changed_at"], unique=False)
        batch_op.create_index(
            "ix_rfid_chip_status_history_chip_changed", ["rfid_chip_id", "changed_at"], unique=False
        )

    op.create_table(
        "security_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="INFO"),
        sa.Column("resource", sa.String(128), nullable=True),
        sa.Column("action", sa.String(64), nullable=True),
        sa.Column("uid", sa.String(64), nullable=True),
        sa.Column("chip_id", sa.String(64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("security_events", schema=None) as batch_op:
        batch_op.create_index("ix_security_events_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_security_events_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_security_events_event_type", ["event_type"], unique=False)
        batch_op.create_index("ix_security_events_success", ["success"], unique=False)
        batch_op.create_index("ix_security_events_uid", ["uid"], unique=False)
        batch_op.create_index("ix_security_events_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_security_events_user_type", ["user_id", "event_type"], unique=False)
        batch_op.create_index(
            "ix_security_events_customer_occurred", ["customer_id", "occurred_at"], unique=False
        )


def downgrade():
    op.drop_table("security_events")
    op.drop_table("rfid_chip_status_history")
    op.drop_table("rfid_chips")
    op.drop_table("supplier_order_lines")
    op.drop_table("supplier_orders")
    op.drop_table("orders")
    op.drop_table("session_tokens")
    op.drop_table("users")
    op.drop_table("control_points")
    op.drop_table("customers")
