# Overview: Flask CLI command groups for bootstrap, user setup, and scheduled maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to storefront (PowerShell: $env:FLASK_APP="storefront").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (use "flask db upgrade" for migration-managed databases).
# - python -m flask system seed
#   Idempotent demo data: admin + customer users, a few products, SAVE20 coupon.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --email admin@storefront.local --name "Admin" --role admin
# - python -m flask users anonymize <user_id> --reason "Erasure request"
#
# Maintenance (schedule these with cron or similar):
# - python -m flask maintenance detect-abandoned-carts [--hours 2]        every 2h
# - python -m flask maintenance send-cart-reminders                        hourly
# - python -m flask maintenance cleanup-abandonment --days 90             daily
# - python -m flask maintenance cleanup-inventory-history --days 365      weekly
# - python -m flask maintenance low-stock-report [--threshold 5]

from datetime import timedelta
from decimal import Decimal

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import StorefrontError
from .extensions import db
from .models import Coupon, Product, User
from .services import abandonment_service, account_service, inventory_service
from .time_utils import days_ago, utcnow


DEMO_PRODUCTS = [
    ("TSHIRT-BLK-M", "Black T-Shirt (M)", "799.00", None, 40),
    ("HOODIE-GRY-L", "Grey Hoodie (L)", "1899.00", "1499.00", 15),
    ("CAP-NVY", "Navy Cap", "499.00", None, 4),
    ("MUG-WHT", "White Mug", "299.00", None, 0),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system seed' for demo data.")


@system_group.command('seed')
@with_appcontext
def seed():
    """Insert demo users, products, and the SAVE20 coupon. Safe to re-run."""
    click.echo("START Seeding demo data...")

    for email, name, role in (
        ("admin@storefront.local", "Store Admin", "admin"),
        ("customer@storefront.local", "Demo Customer", "customer"),
    ):
        if db.session.query(User).filter_by(email=email).first():
            click.echo(f"WARN  User '{email}' already exists, skipping...")
            continue
        user = account_service.create_user(email, name, role=role)
        click.echo(f"PASS Created {role}: {email} (ID: {user.id})")

    for sku, name, price, discount_price, stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(sku=sku).first():
            continue
        db.session.add(Product(
            sku=sku,
            name=name,
            price=Decimal(price),
            discount_price=Decimal(discount_price) if discount_price else None,
            stock_quantity=stock,
        ))
    db.session.commit()
    click.echo(f"PASS Products: {db.session.query(Product).count()}")

    if not db.session.query(Coupon).filter_by(code="SAVE20").first():
        db.session.add(Coupon(
            code="SAVE20",
            name="20% off orders over 1000",
            type="percentage",
            value=20,
            minimum_order_amount=1000,
            maximum_discount_amount=200,
            usage_limit=1,
            is_active=True,
            is_public=True,
            valid_from=days_ago(1),
            valid_until=utcnow() + timedelta(days=365),
        ))
        db.session.commit()
        click.echo("PASS Created coupon SAVE20")

    click.echo("DONE Seed complete.")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', prompt=True, help='Display name')
@click.option('--phone', default=None, help='Phone number')
@click.option('--role', type=click.Choice(['customer', 'admin']), default='customer', show_default=True)
@with_appcontext
def create_user_cli(email, name, phone, role):
    """Create a user row for an account managed by the upstream auth service."""
    try:
        user = account_service.create_user(email, name, phone=phone, role=role)
        click.echo(f"PASS Created user: {user.email} with role '{user.role}' (ID: {user.id})")
    except StorefrontError as e:
        click.echo(f"FAIL Failed to create user: {e.message}")


@users_group.command('anonymize')
@click.argument('user_id')
@click.option('--reason', default=None, help='Recorded on the tombstone')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def anonymize_user_cli(user_id, reason, yes):
    """Erase a user; their orders are kept without the user reference."""
    if not yes:
        click.confirm(f"WARN This will permanently erase user {user_id}. Continue?", abort=True)
    try:
        tombstone = account_service.anonymize_user(user_id, reason=reason)
        click.echo(f"PASS Anonymized {user_id}; {tombstone.detached_order_count} orders detached")
    except StorefrontError as e:
        click.echo(f"FAIL {e.message}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('detect-abandoned-carts')
@click.option('--hours', type=int, default=None, help='Idle hours (default: CART_ABANDONMENT_HOURS)')
@with_appcontext
def detect_abandoned_carts_cli(hours):
    """Flag non-empty carts idle longer than the threshold."""
    flagged = abandonment_service.mark_abandoned_carts(hours)
    click.echo(f"Marked {flagged} carts as abandoned.")


@maintenance_group.command('send-cart-reminders')
@with_appcontext
def send_cart_reminders_cli():
    """Send the next due reminder for each abandoned cart."""
    result = abandonment_service.process_abandonment_reminders()
    click.echo(f"Sent {result['sent']} reminders ({result['failed']} failed).")


@maintenance_group.command('cleanup-abandonment')
@click.option('--days', 'retention_days', type=int, default=None, help='Retention window')
@with_appcontext
def cleanup_abandonment_cli(retention_days):
    """
    Delete abandonment rows older than the retention window.

    Default retention: ABANDONMENT_RETENTION_DAYS (90 days).
    """
    if retention_days is None:
        retention_days = current_app.config["ABANDONMENT_RETENTION_DAYS"]
    deleted = abandonment_service.cleanup_old_records(retention_days=retention_days)
    click.echo(f"Deleted {deleted} abandonment records older than {retention_days} days.")


@maintenance_group.command('cleanup-inventory-history')
@click.option('--days', 'retention_days', type=int, default=None, help='Retention window')
@with_appcontext
def cleanup_inventory_history_cli(retention_days):
    """
    Delete inventory history older than the retention window.

    Default retention: INVENTORY_HISTORY_RETENTION_DAYS (365 days).
    """
    if retention_days is None:
        retention_days = current_app.config["INVENTORY_HISTORY_RETENTION_DAYS"]
    deleted = inventory_service.cleanup_old_inventory_history(retention_days=retention_days)
    click.echo(f"Deleted {deleted} inventory history rows older than {retention_days} days.")


@maintenance_group.command('low-stock-report')
@click.option('--threshold', type=int, default=None, help='Defaults to LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock_report_cli(threshold):
    """List active products with 0 < stock <= threshold."""
    products = inventory_service.get_low_stock_products(threshold)
    if not products:
        click.echo("No low-stock products.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'SKU':<20} {'Name':<36} {'Stock':>8}")
    click.echo("="*70)
    for product in products:
        click.echo(f"{product.sku:<20} {product.name[:36]:<36} {product.stock_quantity:>8}")
    click.echo("="*70 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
