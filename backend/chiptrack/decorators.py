# Overview: Authentication and tenant decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service, security_event_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'customer_id')


def require_auth(f):
    """
    Require a valid bearer session and establish tenant context.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.customer_id: The client's customer (None for staff)
    - g.is_staff: True for staff users
    - g.session_context: The full SessionContext object
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        # A client session without a customer would see every tenant's chips
        if not context.user.is_staff and context.customer_id is None:
            security_event_service.log_security_event(
                user_id=context.user.id,
                event_type="TENANT_CONTEXT_MISSING",
                success=False,
                reason="Client session missing customer_id",
            )
            return jsonify({"error": "Invalid session: missing tenant context"}), 401

        g.current_user = context.user
        g.customer_id = context.customer_id
        g.is_staff = context.user.is_staff
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Staff only (supplier intake, workshop, shipping, SAV reception)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not g.is_staff:
            security_event_service.log_security_event(
                user_id=g.current_user.id,
                customer_id=g.customer_id,
                event_type="STAFF_ACCESS_DENIED",
                success=False,
                reason="Client user attempted a staff operation",
            )
            return jsonify({"error": "Staff access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def require_client(f):
    """Client users only; the operation always runs inside g.customer_id."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if g.is_staff:
            return jsonify({"error": "Client account required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def tenant_scope() -> int | None:
    """customer_id to restrict queries to: None for staff, the client's customer otherwise."""
    return None if g.is_staff else g.customer_id
