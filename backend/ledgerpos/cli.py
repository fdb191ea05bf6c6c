# Overview: Flask CLI command groups for bootstrap and maintenance.

# backend/ledgerpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create any missing tables. Safe to run repeatedly.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory:
# - python -m flask inventory import-stock stock.csv [--chunk-size 500] [--actor-id ops]
#   Apply absolute stock levels from a .csv/.json/.xlsx file.
#
# Maintenance (admin, irreversible):
# - python -m flask movements clear --yes
#   Delete the whole movement log.
# - python -m flask bills delete B-000001 B-000002 --yes
#   Delete bills. Stock sold on them is not restored.

import os

import click
from flask.cli import with_appcontext

from .extensions import db
from .services.actor import Actor, ROLE_ADMIN, SYSTEM_ACTOR
from .services import bill_service, import_service, movement_service
from .services.import_schemas import parse_upload
from .validation import ValidationError


def _cli_actor(actor_id: str | None, actor_name: str | None) -> Actor:
    if not actor_id:
        return SYSTEM_ACTOR
    return Actor(user_id=actor_id, display_name=actor_name or actor_id, role=ROLE_ADMIN)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables that do not exist yet."""
    click.echo("START Initializing ledger database...")
    db.create_all()
    click.echo("PASS Schema ready")


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

    click.echo("PASS Database reset complete")


@click.group('inventory')
def inventory_group():
    """Inventory commands."""


@inventory_group.command('import-stock')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--chunk-size', type=int, default=None, help='Rows per transaction (default STOCK_IMPORT_CHUNK_SIZE)')
@click.option('--actor-id', default=None, help='Acting user id recorded on movements')
@click.option('--actor-name', default=None, help='Acting user display name')
@with_appcontext
def import_stock(path, chunk_size, actor_id, actor_name):
    """Apply absolute stock levels from a .csv, .json or .xlsx file."""
    actor = _cli_actor(actor_id, actor_name)
    try:
        with open(path, 'rb') as fh:
            parsed = parse_upload(os.path.basename(path), fh)
        result = import_service.import_stock_levels(
            parsed,
            actor,
            chunk_size=chunk_size,
            source_file_name=os.path.basename(path),
        )
    except ValidationError as e:
        raise click.ClickException(str(e))

    click.echo(
        f"{result.status}: {result.succeeded_rows} applied, {result.failed_rows} failed, "
        f"{result.skipped_rows} skipped, {result.unchanged_rows} unchanged "
        f"({result.chunks_attempted} chunk(s), batch {result.batch_id})"
    )
    for row in result.skipped:
        click.echo(f"  SKIP row {row['row']}: {row['error']}")
    for chunk in result.chunks:
        if not chunk.committed:
            click.echo(f"  FAIL chunk {chunk.index} ({chunk.size} rows): {chunk.error}")
        elif chunk.unknown_item_ids:
            click.echo(f"  FAIL chunk {chunk.index}: unknown item ids {', '.join(chunk.unknown_item_ids)}")
    for failure in result.audit_failures:
        click.echo(f"  WARN {failure}")
    if result.failed_rows:
        raise SystemExit(1)


@click.group('movements')
def movements_group():
    """Movement log maintenance."""


@movements_group.command('clear')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def clear_movements(yes):
    """DANGER: Delete every movement bucket and event."""
    if not yes:
        click.confirm("WARN This will DELETE THE ENTIRE MOVEMENT LOG. Are you sure?", abort=True)
    result = movement_service.clear_all(SYSTEM_ACTOR)
    click.echo(f"PASS Deleted {result['deleted_events']} event(s) in {result['deleted_buckets']} day bucket(s)")


@click.group('bills')
def bills_group():
    """Bill maintenance."""


@bills_group.command('delete')
@click.argument('bill_ids', nargs=-1, required=True)
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def delete_bills(bill_ids, yes):
    """DANGER: Delete bills. Stock is not restored."""
    if not yes:
        click.confirm(f"WARN This will DELETE {len(bill_ids)} bill(s). Are you sure?", abort=True)
    result = bill_service.batch_delete_bills(list(bill_ids), SYSTEM_ACTOR)
    click.echo(f"PASS Deleted {result['deleted']} bill(s); {result['missing']} not found")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(movements_group)
    app.cli.add_command(bills_group)
