"""
Pytest fixtures for chiptrack backend tests.

Provides an in-memory database, two tenants with client users, a staff user,
and factories for supplier orders, client orders and chips walked through
the real lifecycle engine.
"""

import itertools
from datetime import datetime

import pytest
from chiptrack import create_app
from chiptrack.extensions import db
from chiptrack.models import ControlPoint, Customer, Order, SupplierOrder, SupplierOrderLine
from chiptrack.services import chip_import_service, chip_security_service, lifecycle_service
from chiptrack.services.auth_service import create_user
from chiptrack.services.lifecycle_service import ChipAction
from chiptrack.services.session_service import create_session


PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'RFID_SECRET_KEY': 'test-rfid-secret-key-0123456789abcdef',
        'RFID_MASTER_KEY': 'test-rfid-master-key-0123456789abcdef',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def customer_a(db_session):
    """Customer A (first tenant)."""
    customer = Customer(name="Acme Security", code="ACME", subscription_plan="pro", is_active=True)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def customer_b(db_session):
    """Customer B (second tenant)."""
    customer = Customer(name="Beta Patrols", code="BETA", subscription_plan="pro", is_active=True)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def staff_user(db_session):
    return create_user("staff", "staff@chiptrack.local", PASSWORD, is_staff=True)


@pytest.fixture(scope='function')
def superadmin_user(db_session):
    return create_user("root", "root@chiptrack.local", PASSWORD, is_staff=True, is_superadmin=True)


@pytest.fixture(scope='function')
def client_user_a(db_session, customer_a):
    return create_user("acme", "it@acme.test", PASSWORD, customer_id=customer_a.id)


@pytest.fixture(scope='function')
def client_user_b(db_session, customer_b):
    return create_user("beta", "it@beta.test", PASSWORD, customer_id=customer_b.id)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def _headers_for(user) -> dict:
    _, token = create_session(user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def staff_headers(staff_user):
    return _headers_for(staff_user)


@pytest.fixture(scope='function')
def superadmin_headers(superadmin_user):
    return _headers_for(superadmin_user)


@pytest.fixture(scope='function')
def client_a_headers(client_user_a):
    return _headers_for(client_user_a)


@pytest.fixture(scope='function')
def client_b_headers(client_user_b):
    return _headers_for(client_user_b)


@pytest.fixture(scope='function')
def control_point_a(db_session, customer_a):
    control_point = ControlPoint(customer_id=customer_a.id, code="GATE-1", name="North gate")
    db_session.add(control_point)
    db_session.commit()
    return control_point


@pytest.fixture(scope='function')
def control_point_b(db_session, customer_b):
    control_point = ControlPoint(customer_id=customer_b.id, code="GATE-1", name="Depot gate")
    db_session.add(control_point)
    db_session.commit()
    return control_point


@pytest.fixture(scope='function')
def make_supplier_order(db_session):
    """make_supplier_order(3, 2) -> supplier order with two lines (expects 5 chips)."""
    counter = itertools.count(1)

    def _make(*quantities):
        supplier_order = SupplierOrder(order_number=f"SO-{next(counter):04d}", supplier_name="Tagworks")
        for quantity in quantities:
            supplier_order.lines.append(SupplierOrderLine(description="NTAG blank", quantity=quantity))
        db_session.add(supplier_order)
        db_session.commit()
        return supplier_order

    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """Client order factory; DELIVERED by default."""
    counter = itertools.count(1)

    def _make(customer, quantity=10, *, status="DELIVERED", delivered_at=None, is_stock_reserved=True):
        order = Order(
            customer_id=customer.id,
            order_number=f"CMD-{next(counter):05d}",
            chips_quantity=quantity,
            total_amount_cents=quantity * 500,
            status=status,
            delivered_at=delivered_at or (datetime(2026, 1, 1) if status == "DELIVERED" else None),
            is_stock_reserved=is_stock_reserved,
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture(scope='function')
def uid_factory():
    counter = itertools.count(1)

    def _next() -> str:
        return f"04A1B2C3{next(counter):06X}"

    return _next


@pytest.fixture(scope='function')
def transit_chip(db_session, uid_factory):
    """Factory: a freshly registered EN_TRANSIT chip."""
    def _make(uid=None, **kwargs):
        return chip_import_service.register_single(uid or uid_factory(), **kwargs)
    return _make


@pytest.fixture(scope='function')
def stock_chip(transit_chip):
    """Factory: a chip received and encoded (EN_STOCK, neutral stock)."""
    def _make(uid=None, **kwargs):
        chip = transit_chip(uid, **kwargs)
        lifecycle_service.apply_transition(chip.id, ChipAction.RECEIVE_FROM_SUPPLIER)
        lifecycle_service.apply_transition(chip.id, ChipAction.ENCODE)
        return chip
    return _make


@pytest.fixture(scope='function')
def delivered_chip(stock_chip, make_order):
    """Factory: a chip shipped to `customer` and delivery-confirmed (LIVREE)."""
    def _make(customer, order=None):
        order = order or make_order(customer, 10, status="PAID", is_stock_reserved=False)
        chip = stock_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id)
        lifecycle_service.apply_transition(
            chip.id, ChipAction.CONFIRM_DELIVERY,
            owner_customer_id=customer.id, packaging_code=chip.packaging_code,
        )
        return chip
    return _make


@pytest.fixture(scope='function')
def active_chip(delivered_chip):
    """Factory: a delivered chip assigned to a control point (ACTIVE)."""
    def _make(customer, control_point):
        chip = delivered_chip(customer)
        lifecycle_service.apply_transition(
            chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT, control_point_id=control_point.id
        )
        return chip
    return _make


@pytest.fixture(scope='function')
def tag_read():
    """What the mobile app reads off a genuine tag."""
    def _read(chip) -> dict:
        return {
            "uid": chip.uid,
            "chip_id": chip.id,
            "block4_data": chip_security_service.encode_block4(chip.chip_id),
            "block8_data": chip.checksum,
        }
    return _read
