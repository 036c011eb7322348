# Overview: Flask CLI command groups for bootstrap, ledger audit, and marketplace maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to backoffice (PowerShell: $env:FLASK_APP="backoffice").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent; use `flask db upgrade` for managed schemas).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo organization with two locations, products and opening stock.
#
# Stock ledger audit/repair:
# - python -m flask stock verify [--org-id 1]
#   Report aggregate drift and records that disagree with their movement log.
# - python -m flask stock recompute --product-id 7
#   Rewrite the cached aggregate of one product from its stock records.
#
# Marketplace:
# - python -m flask marketplace push --product-id 7 --product-id 8
#   Push current stock of the given products to every active channel, inline.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Location, Organization, Product, ReferenceType
from .services import stock_ledger
from .services.concurrency import run_with_retry


SYSTEM_ACTOR = "system"


@click.group('system')
def system_group():
    """System bootstrap commands."""


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

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Demo organization, two locations, three products with opening stock."""
    if db.session.query(Organization).filter_by(code="DEMO").first():
        click.echo("SKIP Demo organization already exists.")
        return

    org = Organization(name="Demo Retail", code="DEMO")
    db.session.add(org)
    db.session.flush()

    main = Location(org_id=org.id, name="Main Store", is_main=True)
    warehouse = Location(org_id=org.id, name="Warehouse")
    db.session.add_all([main, warehouse])

    products = [
        Product(org_id=org.id, sku="TSHIRT-M", name="T-Shirt M", price_cents=1500),
        Product(org_id=org.id, sku="MUG-01", name="Mug", price_cents=900),
        Product(org_id=org.id, sku="CAP-01", name="Cap", price_cents=1200),
    ]
    db.session.add_all(products)
    db.session.commit()

    opening = [(products[0], main, 12), (products[0], warehouse, 30), (products[1], main, 8), (products[2], warehouse, 5)]
    for product, location, qty in opening:
        stock_ledger.apply_stock_delta(product.id, location.id, qty, stock_ledger.MovementMeta(
            reason="Opening stock",
            reference_type=ReferenceType.ADJUSTMENT,
            actor=SYSTEM_ACTOR,
        ))

    click.echo(f"PASS Demo organization {org.id} created with locations {main.id}, {warehouse.id}.")


@click.group('stock')
def stock_group():
    """Stock ledger audit and repair."""


@stock_group.command('verify')
@click.option('--org-id', type=int, default=None, help='Limit to one organization')
@with_appcontext
def verify_stock(org_id):
    """Check the aggregate invariant and movement completeness."""
    drift = stock_ledger.find_drift(org_id=org_id)
    if not drift:
        click.echo("PASS Ledger consistent.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Kind':<12} {'Product':<10} {'Location':<10} {'Expected':<10} {'Actual'}")
    click.echo("="*80)
    for entry in drift:
        click.echo(
            f"{entry['kind']:<12} {entry['product_id']:<10} {entry.get('location_id') or '-':<10} "
            f"{entry['expected']:<10} {entry['actual']}"
        )
    click.echo("="*80 + "\n")
    raise SystemExit(1)


@stock_group.command('recompute')
@click.option('--product-id', type=int, required=True, help='Product to recompute')
@with_appcontext
def recompute_stock(product_id):
    """Rewrite Product.stock_quantity from its stock records."""
    if db.session.get(Product, product_id) is None:
        raise click.ClickException(f"Product {product_id} not found")

    def _op():
        total = stock_ledger.recompute_aggregate(product_id)
        db.session.commit()
        return total

    total = run_with_retry(_op)
    click.echo(f"PASS Product {product_id} stock_quantity = {total}")


@click.group('marketplace')
def marketplace_group():
    """Marketplace stock sync."""


@marketplace_group.command('push')
@click.option('--product-id', 'product_ids', type=int, multiple=True, required=True, help='Product to push (repeatable)')
@with_appcontext
def push_stock(product_ids):
    """Push stock now, in-process, bypassing the Celery queue."""
    from .services.marketplace_sync import sync_products

    summary = sync_products(product_ids)
    click.echo(f"Pushed: {summary['pushed']}  Failed: {summary['failed']}")
    if summary["failed"]:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(marketplace_group)
