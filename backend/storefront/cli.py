# Overview: Flask CLI command groups for schema bootstrap, reconciliation and stock reports.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Schema:
# - python -m flask system init-db
#   Create any missing tables (existing data is kept).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Reconciliation (run from cron after an outage, or on a schedule):
# - python -m flask reconcile scan [--store-id 1] [--older-than-minutes 10]
#   List orders stuck between checkout stages and open incidents.
# - python -m flask reconcile repair --order-id 42
#   Roll one interrupted checkout forward (or cancel it if it has no items).
# - python -m flask reconcile repair --all [--store-id 1]
#   Repair every order the scan reports.
# - python -m flask reconcile verify --store-id 1
#   Replay the stock and points ledgers against the live counters.
#
# Inventory:
# - python -m flask inventory low-stock --store-id 1 [--policy fill_to_target]
#   Variants at or below threshold with a suggested reorder quantity.

from datetime import timedelta

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, incident_service, reconciliation_service
from .services.inventory_service import InventoryError
from .validation import ConflictError, NotFoundError


@click.group('system')
def system_group():
    """Schema bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Schema is up to date.")


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

    click.echo("PASS Database reset complete.")


@click.group('reconcile')
def reconcile_group():
    """Checkout reconciliation commands."""


@reconcile_group.command('scan')
@click.option('--store-id', type=int, help='Filter by store ID')
@click.option('--older-than-minutes', type=int, help='Grace period for in-flight checkouts')
@with_appcontext
def scan_cli(store_id, older_than_minutes):
    """
    List orders that need attention.

    Example:
        flask reconcile scan --store-id 1
    """
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    diagnoses = reconciliation_service.scan_orders(store_id, older_than=older_than)
    incidents = incident_service.list_open_incidents(store_id)

    if not diagnoses and not incidents:
        click.echo("PASS Nothing to reconcile.")
        return

    for d in diagnoses:
        click.echo(
            f"  order {d.order_id} ({d.order_number}) status={d.status} "
            f"stage={d.checkout_stage} issues={', '.join(d.issues)}"
        )
    for i in incidents:
        click.echo(f"  incident {i.id} order={i.order_id} stage={i.stage} {i.error_type}: {i.message}")

    click.echo(f"\nWARN {len(diagnoses)} orders, {len(incidents)} open incidents")


@reconcile_group.command('repair')
@click.option('--order-id', type=int, help='Order to repair')
@click.option('--all', 'repair_all', is_flag=True, help='Repair every order the scan reports')
@click.option('--store-id', type=int, help='Limit --all to one store')
@with_appcontext
def repair_cli(order_id, repair_all, store_id):
    """
    Roll interrupted checkouts forward.

    Example:
        flask reconcile repair --order-id 42
    """
    if order_id is None and not repair_all:
        raise click.UsageError("Pass --order-id or --all")

    if repair_all:
        order_ids = [d.order_id for d in reconciliation_service.scan_orders(store_id)]
    else:
        order_ids = [order_id]

    failures = 0
    for oid in order_ids:
        try:
            result = reconciliation_service.repair_order(oid)
            actions = ", ".join(result["actions"]) or "no action"
            click.echo(f"PASS order {oid}: {actions}")
        except (NotFoundError, ConflictError) as e:
            db.session.rollback()
            failures += 1
            click.echo(f"FAIL order {oid}: {str(e)}")

    if failures:
        raise click.ClickException(f"{failures} orders could not be repaired")


@reconcile_group.command('verify')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def verify_cli(store_id):
    """Replay the stock and points ledgers against the live counters."""
    inventory = reconciliation_service.verify_inventory_ledger(store_id)
    loyalty = reconciliation_service.verify_loyalty_ledger(store_id)

    for m in inventory:
        click.echo(
            f"  variant {m['variant_id']} ({m['sku']}): stock={m['stock_quantity']} "
            f"ledger={m['expected_quantity']}"
        )
    for m in loyalty:
        click.echo(
            f"  account {m['account_id']} ({m['customer_phone']}): points={m['total_points']} "
            f"ledger={m['expected_points']}"
        )

    if inventory or loyalty:
        raise click.ClickException(
            f"Ledger mismatch: {len(inventory)} variants, {len(loyalty)} loyalty accounts"
        )
    click.echo("PASS Ledgers match counters.")


@click.group('inventory')
def inventory_group():
    """Inventory report commands."""


@inventory_group.command('low-stock')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--policy', help='Reorder policy name (defaults to REORDER_POLICY)')
@with_appcontext
def low_stock_cli(store_id, policy):
    """
    Variants at or below their low-stock threshold.

    Example:
        flask inventory low-stock --store-id 1
    """
    try:
        items = inventory_service.query_low_stock(store_id, policy=policy)
    except InventoryError as e:
        raise click.ClickException(str(e))

    if not items:
        click.echo("PASS No variants below threshold.")
        return

    click.echo(f"{'SKU':<20} {'Product':<30} {'Stock':>6} {'Min':>5} {'Reorder':>8}")
    for item in items:
        click.echo(
            f"{(item['sku'] or '-'):<20} {item['product_name'][:30]:<30} "
            f"{item['stock_quantity']:>6} {item['low_stock_threshold']:>5} {item['suggested_reorder_qty']:>8}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(reconcile_group)
    app.cli.add_command(inventory_group)
