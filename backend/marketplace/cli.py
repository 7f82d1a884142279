# Overview: Flask CLI command groups for inspection and operations on the fulfillment core.

# backend/marketplace/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory:
# - python -m flask inventory low-stock [--store-id 1]
#   Records at or below their reorder level.
# - python -m flask inventory out-of-stock [--store-id 1]
#   Records with nothing available.
# - python -m flask inventory stats [--store-id 1]
#   Counts and stock value.
#
# Orders:
# - python -m flask orders stats [--store-id 1]
#   Counts per status, revenue, completion/cancellation rates.
# - python -m flask orders cancel 42 --reason "Customer request"
#   Cancel an order and release its stock.
#
# Deliveries:
# - python -m flask deliveries dispatch 42
#   Run the delivery workflow for an order (idempotent).
# - python -m flask deliveries status 7 picked_up
#   Move a delivery along its status machine.

import json

import click
from flask.cli import with_appcontext
from sqlalchemy.exc import SQLAlchemyError

from .errors import MarketplaceError, wrap_database_error
from .extensions import db
from .services import delivery_service, inventory_service, order_service


def _fail(exc: MarketplaceError):
    raise click.ClickException(json.dumps(exc.to_dict()))


def _run(fn, action: str):
    try:
        return fn()
    except MarketplaceError as exc:
        _fail(exc)
    except SQLAlchemyError as exc:
        db.session.rollback()
        _fail(wrap_database_error(exc, action))


def _echo_records(records):
    if not records:
        click.echo("No inventory records found")
        return
    for r in records:
        click.echo(
            f"{r.id:>5}  store={r.store_id:<4} {r.name:<30} "
            f"available={r.available_quantity:<5} reserved={r.reserved_quantity:<5} "
            f"reorder_level={r.reorder_level}"
        )


@click.group('system')
def system_group():
    """System maintenance commands."""


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


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def low_stock(store_id):
    """List records at or below their reorder level."""
    _echo_records(_run(lambda: inventory_service.find_low_stock(store_id), "list low stock"))


@inventory_group.command('out-of-stock')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def out_of_stock(store_id):
    """List records with zero available quantity."""
    _echo_records(_run(lambda: inventory_service.find_out_of_stock(store_id), "list out of stock"))


@inventory_group.command('stats')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def inventory_stats(store_id):
    stats = _run(lambda: inventory_service.get_inventory_stats(store_id), "load inventory stats")
    click.echo(json.dumps(stats, indent=2))


@click.group('orders')
def orders_group():
    """Order inspection and operations."""


@orders_group.command('stats')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def order_stats(store_id):
    stats = _run(lambda: order_service.get_order_stats(store_id), "load order stats")
    click.echo(json.dumps(stats, indent=2))


@orders_group.command('cancel')
@click.argument('order_id', type=int)
@click.option('--reason', default=None, help='Cancellation reason')
@with_appcontext
def cancel_order(order_id, reason):
    """Cancel an order and put its stock back."""
    result = _run(lambda: order_service.cancel_order(order_id, reason), "cancel order")
    click.echo(f"PASS Cancelled order {result.order.order_number}")
    for failure in result.failed_releases:
        click.echo(
            f"WARN  Allocation {failure['allocation_id']} (inventory {failure['inventory_id']}, "
            f"qty {failure['quantity']}) not released: {failure['message']}"
        )


@click.group('deliveries')
def deliveries_group():
    """Delivery dispatch commands."""


@deliveries_group.command('dispatch')
@click.argument('order_id', type=int)
@click.option('--strict', is_flag=True, help='Fail if a delivery already exists')
@with_appcontext
def dispatch(order_id, strict):
    """Run the delivery workflow for an order."""
    result = _run(
        lambda: delivery_service.create_delivery_workflow(order_id, strict=strict),
        "create delivery",
    )
    if result.duplicate:
        click.echo(f"WARN  {result.message} (delivery {result.delivery.id})")
    click.echo(json.dumps(result.to_dict(), indent=2))


@deliveries_group.command('status')
@click.argument('delivery_id', type=int)
@click.argument('status')
@with_appcontext
def delivery_status(delivery_id, status):
    delivery = _run(
        lambda: delivery_service.update_delivery_status(delivery_id, status),
        "update delivery status",
    )
    click.echo(f"PASS Delivery {delivery.id} is now {delivery.delivery_status}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(deliveries_group)
