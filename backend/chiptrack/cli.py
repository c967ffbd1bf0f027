# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/chiptrack/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-password "Password123"]
#   Idempotent bootstrap: creates missing tables and a default staff superadmin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Customers (tenants):
# - python -m flask customers list
# - python -m flask customers create --name "Acme Security" --code ACME --chip-limit 500
# - python -m flask customers add-control-point --customer-id 1 --code GATE-1 --name "North gate"
#
# Users:
# - python -m flask users create --username ops --email ops@chiptrack.local --staff
# - python -m flask users create --username acme --email it@acme.test --customer-id 1
#
# Chips:
# - python -m flask chips audit [--only-problems]
#   Walk every chip's history and reconcile stored timestamps and checksums.
# - python -m flask chips stats
#   Per-status counts and neutral stock figures.
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
# - python -m flask maintenance cleanup-sessions

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import ControlPoint, Customer, RfidChip, User
from .services.auth_service import create_user, PasswordValidationError
from .services import lifecycle_service, reporting_service, security_event_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', show_default=True)
@click.option('--admin-email', default='admin@chiptrack.local', show_default=True)
@click.option('--admin-password', default='Password123', show_default=True)
@with_appcontext
def init_system(admin_username, admin_email, admin_password):
    """
    Create missing tables and a default staff superadmin.

    SECURITY: Change the default password immediately in production!
    """
    click.echo("START Initializing chiptrack...")
    db.create_all()

    existing = db.session.query(User).filter_by(username=admin_username).first()
    if existing:
        click.echo(f"PASS Using existing user: {existing.username} (ID: {existing.id})")
    else:
        try:
            user = create_user(
                admin_username, admin_email, admin_password, is_staff=True, is_superadmin=True
            )
        except (ValueError, PasswordValidationError) as e:
            raise click.ClickException(str(e))
        click.echo(f"PASS Created staff superadmin: {user.username} (ID: {user.id})")

    click.echo("DONE System initialized.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("DONE Database reset complete.")


@click.group('customers')
def customers_group():
    """Customer (tenant) management."""


@customers_group.command('list')
@with_appcontext
def list_customers():
    customers = db.session.query(Customer).order_by(Customer.id.asc()).all()
    if not customers:
        click.echo("No customers.")
        return
    for customer in customers:
        status = "active" if customer.is_active else "inactive"
        limit = customer.chip_limit if customer.chip_limit is not None else "default"
        click.echo(f"{customer.id:>4}  {customer.code or '-':<12} {customer.name:<30} {status:<8} limit={limit}")


@customers_group.command('create')
@click.option('--name', required=True)
@click.option('--code', default=None)
@click.option('--plan', 'subscription_plan', default='free', show_default=True)
@click.option('--chip-limit', type=int, default=None)
@with_appcontext
def create_customer(name, code, subscription_plan, chip_limit):
    if code and db.session.query(Customer).filter_by(code=code).first():
        raise click.ClickException(f"Customer code {code} already exists")
    customer = Customer(name=name, code=code, subscription_plan=subscription_plan, chip_limit=chip_limit)
    db.session.add(customer)
    db.session.commit()
    click.echo(f"PASS Created customer {customer.name} (ID: {customer.id})")


@customers_group.command('add-control-point')
@click.option('--customer-id', type=int, required=True)
@click.option('--code', required=True)
@click.option('--name', required=True)
@click.option('--location', default=None)
@with_appcontext
def add_control_point(customer_id, code, name, location):
    if not db.session.get(Customer, customer_id):
        raise click.ClickException("Customer not found")
    control_point = ControlPoint(customer_id=customer_id, code=code, name=name, location_description=location)
    db.session.add(control_point)
    db.session.commit()
    click.echo(f"PASS Created control point {control_point.code} (ID: {control_point.id})")


@click.group('users')
def users_group():
    """User management."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--customer-id', type=int, default=None, help='Customer for client users')
@click.option('--staff', is_flag=True, help='Create a staff user (no customer)')
@click.option('--superadmin', is_flag=True, help='Staff user allowed to read every whitelist')
@with_appcontext
def create_user_cli(username, email, password, customer_id, staff, superadmin):
    try:
        user = create_user(
            username, email, password,
            customer_id=customer_id, is_staff=staff, is_superadmin=superadmin,
        )
    except (ValueError, PasswordValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created {user.user_type.lower()} user {user.username} (ID: {user.id})")


@click.group('chips')
def chips_group():
    """Chip registry inspection."""


@chips_group.command('audit')
@click.option('--only-problems', is_flag=True, help='Print only inconsistent chips')
@with_appcontext
def audit_chips(only_problems):
    """
    Reconcile every chip against its status history.

    Exits with status 1 when any chip is inconsistent.
    """
    problems = 0
    total = 0
    for chip in db.session.query(RfidChip).order_by(RfidChip.chip_id.asc()).all():
        total += 1
        report = lifecycle_service.audit_chip(chip)
        if report["is_consistent"]:
            if not only_problems:
                click.echo(f"PASS {chip.chip_id} {report['status']}")
            continue
        problems += 1
        click.echo(f"FAIL {chip.chip_id} ({chip.uid}) {report['status']}")
        for issue in report["walk_issues"]:
            click.echo(f"     walk: {issue}")
        if not report["status_matches_history"]:
            click.echo("     status does not match last history row")
        for mismatch in report["timestamp_mismatches"]:
            click.echo(
                f"     {mismatch['field']}: stored={mismatch['stored']} derived={mismatch['derived']}"
            )
        if report["checksum_valid"] is False:
            click.echo("     checksum does not validate with current RFID_SECRET_KEY")

    click.echo(f"DONE {total} chips audited, {problems} inconsistent.")
    if problems:
        raise SystemExit(1)


@chips_group.command('stats')
@with_appcontext
def chip_stats():
    stock = reporting_service.stock_statistics()
    for status, count in stock["by_status"].items():
        click.echo(f"{status:<14} {count:>8}")
    click.echo(
        f"neutral stock={stock['neutral_stock']} reserved={stock['reserved']} "
        f"available={stock['available']}"
    )


@click.group('maintenance')
def maintenance_group():
    """Data retention commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = security_event_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cli():
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"Deleted {deleted} expired or revoked sessions.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(users_group)
    app.cli.add_command(chips_group)
    app.cli.add_command(maintenance_group)
