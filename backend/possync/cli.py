# Overview: Flask CLI command groups for bootstrap, self-test, sync, and maintenance.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Local store bootstrap/repair:
# - python -m flask offline init-db
#   Create missing tables (idempotent). Use "flask db upgrade" for migrated installs.
# - python -m flask offline reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all local data).
# - python -m flask offline self-test
#   Write and read back a test product and a test sale on this device.
# - python -m flask offline clear-test-data
#   Remove every test_product_* / test_sale_* document.
#
# Sync with the server of record (REMOTE_SYNC_URL):
# - python -m flask sync status
#   Pending counts and checkpoints per entity type.
# - python -m flask sync push sale
#   Push pending documents of one entity type (category, product, sale).
# - python -m flask sync pull product
#   Pull server changes for one entity type.
# - python -m flask sync run
#   Push then pull every entity type.
#
# Maintenance:
# - python -m flask maintenance cleanup --entity sale --days 30
#   Tombstone documents older than the retention window (synced sales only).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import maintenance_service
from .services import selftest_service
from .services.document_store import ENTITY_TYPES
from .services.reconcile_service import get_reconciler


@click.group('offline')
def offline_group():
    """Local document store commands."""


@offline_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Local store tables ready.")


@offline_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL LOCAL DATA, including sales not yet synced!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL LOCAL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@offline_group.command('self-test')
@with_appcontext
def self_test():
    """Exercise the local store with a test product and a test sale."""
    storage = selftest_service.check_offline_storage()
    if storage["ok"]:
        click.echo(f"PASS Offline storage: {storage['id']} ({storage['count']} test product(s))")
    else:
        click.echo(f"FAIL Offline storage: {storage.get('error', 'read-back mismatch')}")

    sales = selftest_service.check_offline_sales()
    if sales["ok"]:
        click.echo(f"PASS Offline sales: {sales['id']} ({sales['count']} test sale(s))")
    else:
        click.echo(f"FAIL Offline sales: {sales.get('error')}")

    if not (storage["ok"] and sales["ok"]):
        raise SystemExit(1)


@offline_group.command('clear-test-data')
@with_appcontext
def clear_test_data():
    """Remove self-test documents."""
    removed = selftest_service.clear_test_data()
    click.echo(f"Removed {removed['product']} test product(s) and {removed['sale']} test sale(s).")


@click.group('sync')
def sync_group():
    """Reconciliation with the server of record."""


@sync_group.command('status')
@with_appcontext
def sync_status():
    status = get_reconciler().get_sync_status()
    click.echo(f"Remote configured: {status['remote_configured']}  reachable: {status['online']}")
    click.echo("\n" + "="*60)
    click.echo(f"{'Entity':<12} {'Pending':<10} {'Last push':<22} {'Last pull'}")
    click.echo("="*60)
    for entity_type in ENTITY_TYPES:
        cp = status["checkpoints"].get(entity_type) or {}
        click.echo(
            f"{entity_type:<12} {status['pending_counts'].get(entity_type, 0):<10} "
            f"{cp.get('last_push_at') or '-':<22} {cp.get('last_pull_at') or '-'}"
        )


@sync_group.command('push')
@click.argument('entity_type', type=click.Choice(ENTITY_TYPES))
@with_appcontext
def sync_push(entity_type):
    result = get_reconciler().push_pending(entity_type)
    click.echo(f"Pushed {entity_type}: {len(result['synced'])} synced, {len(result['failed'])} failed")
    for doc_id in result["failed"]:
        click.echo(f"  FAIL {doc_id}")


@sync_group.command('pull')
@click.argument('entity_type', type=click.Choice(ENTITY_TYPES))
@with_appcontext
def sync_pull(entity_type):
    result = get_reconciler().pull_updates(entity_type)
    click.echo(
        f"Pulled {entity_type}: {len(result['applied'])} applied, "
        f"{len(result['conflicts'])} conflict(s), {len(result['failed'])} failed"
    )
    for doc_id in result["conflicts"]:
        click.echo(f"  CONFLICT {doc_id} (resolve via /api/offline/<entity>/<id>/resolve)")


@sync_group.command('run')
@with_appcontext
def sync_run():
    summary = get_reconciler().sync_all()
    if not summary["online"]:
        click.echo("WARN No REMOTE_SYNC_URL configured; working offline.")
        return
    for entity_type, outcome in summary["results"].items():
        click.echo(
            f"{entity_type:<10} push {len(outcome['push']['synced'])}/{len(outcome['push']['failed'])}  "
            f"pull {len(outcome['pull']['applied'])}/{len(outcome['pull']['conflicts'])}"
        )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup')
@click.option('--entity', 'entity_type', type=click.Choice(ENTITY_TYPES), default='sale', show_default=True)
@click.option('--days', type=int, default=None, help='Retention window (default CLEANUP_RETENTION_DAYS)')
@with_appcontext
def cleanup_cli(entity_type, days):
    """
    Tombstone old documents.

    Sales are only removed once synced.
    """
    removed = maintenance_service.cleanup(entity_type, older_than_days=days)
    click.echo(f"Removed {removed} {entity_type} document(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(offline_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(maintenance_group)
