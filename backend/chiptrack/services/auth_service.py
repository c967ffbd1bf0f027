# Overview: Password hashing, user creation and credential checks.

"""
Authentication Service

Uses bcrypt for password hashing and validates password strength.
Staff users have no customer; client users belong to exactly one customer.
Session tokens are managed separately (see session_service.py).
"""

import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import Customer, User
from ..models.auth import USER_TYPE_CLIENT, USER_TYPE_STAFF
from chiptrack.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt at BCRYPT_ROUNDS."""
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds))
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """bcrypt.checkpw is timing-safe. Malformed hashes never verify."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    *,
    customer_id: int | None = None,
    is_staff: bool = False,
    is_superadmin: bool = False,
) -> User:
    """
    Create a user.

    Client users need an active customer; staff users must not have one.

    Raises:
        ValueError: unknown/inactive customer, duplicate username, bad type
        PasswordValidationError: weak password
    """
    if is_staff and customer_id is not None:
        raise ValueError("Staff users cannot belong to a customer")
    if not is_staff:
        if customer_id is None:
            raise ValueError("Client users require customer_id")
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise ValueError("Customer not found")
        if not customer.is_active:
            raise ValueError("Customer is not active")
    if is_superadmin and not is_staff:
        raise ValueError("Only staff users can be superadmins")

    existing = db.session.query(User).filter(User.username == username).first()
    if existing:
        raise ValueError("Username already exists")

    user = User(
        customer_id=customer_id,
        username=username,
        email=email,
        password_hash=hash_password(password),
        user_type=USER_TYPE_STAFF if is_staff else USER_TYPE_CLIENT,
        is_superadmin=is_superadmin,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate by username or email.

    Returns None for unknown users, wrong passwords, inactive users and
    client users whose customer is inactive.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if user.customer_id is not None:
        customer = db.session.get(Customer, user.customer_id)
        if not customer or not customer.is_active:
            return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
