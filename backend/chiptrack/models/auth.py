from __future__ import annotations

from ..extensions import db
from chiptrack.time_utils import to_utc_z


USER_TYPE_STAFF = "STAFF"
USER_TYPE_CLIENT = "CLIENT"


class User(db.Model):
    """
    User accounts for authentication and attribution.

    STAFF users work the supplier/workshop/shipping side and have no
    customer_id. CLIENT users belong to exactly one Customer and only ever
    see that customer's chips. is_superadmin lets staff read any tenant's
    whitelist.

    WHY: Every transition records who made it. No shared logins.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint(
            "(user_type = 'STAFF' AND customer_id IS NULL) OR "
            "(user_type = 'CLIENT' AND customer_id IS NOT NULL)",
            name="ck_users_type_customer",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    user_type = db.Column(db.String(16), nullable=False, default=USER_TYPE_CLIENT)
    is_superadmin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    customer = db.relationship("Customer", backref=db.backref("users", lazy=True))

    @property
    def is_staff(self) -> bool:
        return self.user_type == USER_TYPE_STAFF

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "username": self.username,
            "email": self.email,
            "user_type": self.user_type,
            "is_superadmin": self.is_superadmin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Opaque bearer session. Only the SHA-256 of the token is stored.

    customer_id is captured at login and never changes for the session.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
