# Overview: Flask CLI command groups for bootstrap, invoice counters, and ledger maintenance.

# backend/gasledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create tables (idempotent) and seed the unified invoice counter.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Invoice numbering:
# - python -m flask invoices init-counter
#   Seed/raise this year's counter from invoice history or the configured start.
# - python -m flask invoices status
#   Show the current sequence and the next invoice number.
# - python -m flask invoices set-start 20000
#   Persist a new configured start and raise the counter to it.
#
# Maintenance:
# - python -m flask maintenance merge-duplicates --scope all
#   Collapse duplicate assignment / employee inventory rows.
# - python -m flask maintenance rebuild-aggregates --date 2024-05-01 [--employee-id 5]
#   Delete and replay one day's rollups for an employee (or the admin side).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import aggregation_service, reconciliation_service
from .services.invoice_service import get_registry
from .time_utils import business_date, parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create missing tables and seed the unified invoice counter."""
    click.echo("START Initializing gasledger...")
    db.create_all()
    click.echo("PASS Tables ready")

    next_invoice = get_registry().initialize()
    click.echo(f"PASS Invoice counter ready; next invoice sequence: {next_invoice}")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('invoices')
def invoices_group():
    """Invoice counter commands."""


@invoices_group.command('init-counter')
@with_appcontext
def init_counter():
    """Seed or raise this year's unified invoice counter (never lowers it)."""
    next_invoice = get_registry().initialize()
    click.echo(f"PASS Next invoice sequence: {next_invoice}")


@invoices_group.command('status')
@with_appcontext
def counter_status():
    status = get_registry().status()
    if not status["exists"]:
        click.echo(f"No counter for {status['year']} yet; it is seeded on first use.")
        return
    click.echo(
        f"Year {status['year']}: current sequence {status['current_sequence']}, "
        f"next invoice {status['next_invoice']}"
    )


@invoices_group.command('set-start')
@click.argument('start_number', type=click.IntRange(min=1))
@with_appcontext
def set_start(start_number):
    """Persist a new configured start number and raise the counter to it."""
    next_invoice = get_registry().set_start_number(start_number)
    click.echo(f"PASS Start number set to {start_number}; next invoice sequence: {next_invoice}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('merge-duplicates')
@click.option('--scope', type=click.Choice(reconciliation_service.MERGE_SCOPES), default='all', show_default=True)
@with_appcontext
def merge_duplicates_cli(scope):
    """Collapse duplicate rows into the oldest row of each group."""
    report = reconciliation_service.merge_duplicates(scope)
    click.echo(f"Merged {report.merged_groups} group(s), deleted {report.deleted_records} row(s).")


@maintenance_group.command('rebuild-aggregates')
@click.option('--date', 'day', default=None, help='YYYY-MM-DD (default: today)')
@click.option('--employee-id', type=int, default=None, help='Omit for the admin-side rollups')
@with_appcontext
def rebuild_aggregates_cli(day, employee_id):
    """Delete and replay one day's rollups."""
    try:
        target = parse_iso_date(day) or business_date()
    except ValueError:
        raise click.BadParameter("date must be YYYY-MM-DD", param_hint="--date")
    result = aggregation_service.rebuild_daily_aggregates(employee_id, target)
    click.echo(
        f"Rebuilt {target.isoformat()}: {result['deleted']} row(s) deleted, "
        f"{result['replayed']} event(s) replayed."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(invoices_group)
    app.cli.add_command(maintenance_group)
