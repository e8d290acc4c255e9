# Overview: Flask CLI command group for ledger bootstrap and batch jobs.

# backend/docledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Bootstrap:
# - python -m flask ledger init-db
#   Create all ledger tables (idempotent).
# - python -m flask ledger reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Batch jobs:
# - python -m flask ledger scan-overdue [--as-of 2026-10-17] [--dry-run]
#   Mark past-due documents overdue and emit one reminder each.
# - python -m flask ledger republish-events [--limit 500]
#   Retry publication of events left pending by a failed publish.

import click
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .services import ledger_service, overdue_service


@click.group('ledger')
def ledger_group():
    """Ledger bootstrap and batch commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Ledger tables ready.")


@ledger_group.command('reset-db')
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


@ledger_group.command('scan-overdue')
@click.option('--as-of', 'as_of', default=None, help='Reference date (YYYY-MM-DD), defaults to today')
@click.option('--dry-run', is_flag=True, help='List candidates without changing anything')
@with_appcontext
def scan_overdue_cli(as_of, dry_run):
    """Move past-due documents with a balance to overdue."""
    try:
        if dry_run:
            candidates = overdue_service.find_overdue_candidates(as_of)
            for doc in candidates:
                click.echo(
                    f"{doc.document_number:20} {doc.status:15} due {doc.due_date.isoformat()} "
                    f"balance {doc.balance_amount} {doc.currency}"
                )
            click.echo(f"{len(candidates)} document(s) would be marked overdue.")
            return

        count = overdue_service.scan_overdue(as_of)
    except LedgerError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"Marked {count} document(s) overdue.")


@ledger_group.command('republish-events')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def republish_events_cli(limit):
    """Retry publication of pending ledger events."""
    pending = len(ledger_service.get_pending_events(limit=limit))
    published = ledger_service.republish_pending_events(limit=limit)
    click.echo(f"Published {published} of {pending} pending event(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
