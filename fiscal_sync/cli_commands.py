"""
Flask CLI commands for operators.

Commands:
- flask init-db: Create all tables
- flask sync-orders: Run the order sync for one or all tenants
- flask renumber-receipts: Compact a tenant's receipt numbering
- flask process-refunds: Retry queued refunds
"""

import click
from flask import current_app
from fiscal_sync.database import create_schema, get_session
from fiscal_sync.exceptions import FiscalSyncError


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create database tables (idempotent)."""
        create_schema()
        click.echo(click.style('✅ Database schema ready', fg='green'))

    @app.cli.command('sync-orders')
    @click.option('--tenant-id', type=int, default=None, help='Tenant to sync (default: all active tenants)')
    @click.option('--backfill', is_flag=True, help='Backfill from --start-date instead of the recent window')
    @click.option('--start-date', default=None, help='Backfill start date (YYYY-MM-DD)')
    @click.option('--max-pages', type=int, default=None, help='Pages per invocation')
    @click.option('--paid-only', is_flag=True, help='Only fetch orders with payment status PAID')
    def sync_orders(tenant_id, backfill, start_date, max_pages, paid_only):
        """Sync Wix orders and issue due receipts."""
        from fiscal_sync.services.sync_service import run_backfill, run_incremental_sync
        from fiscal_sync.services.tenant_service import get_tenant, list_active_tenants
        from fiscal_sync.services.wix_client import get_wix_client

        session = get_session()
        client = get_wix_client()

        try:
            tenants = [get_tenant(session, tenant_id)] if tenant_id else list_active_tenants(session)
        except FiscalSyncError as e:
            click.echo(click.style(f'❌ {e.message}', fg='red'))
            return

        for tenant in tenants:
            if backfill:
                result = run_backfill(session, client, tenant, start_date=start_date,
                                      max_pages=max_pages, paid_only=paid_only)
            else:
                result = run_incremental_sync(session, client, tenant, max_pages=max_pages)

            color = 'green' if result.status == 'done' else 'yellow' if result.status == 'partial' else 'red'
            click.echo(click.style(f'Tenant {result.tenant_id}: {result.status}', fg=color, bold=True))
            click.echo(f'   Orders: {result.total}  Pages: {result.pages}')
            click.echo(f'   Receipts: {result.receipts_issued}  Refunds: {result.refunds_issued}  '
                       f'Skipped: {result.receipts_skipped}')
            for reason, count in sorted(result.skip_reasons.items()):
                click.echo(f'     - {reason}: {count}')
            if result.errors:
                click.echo(click.style(f'   Errors: {len(result.errors)}', fg='red'))
            if result.cursor:
                click.echo(f'   Next offset: {result.cursor}')

    @app.cli.command('renumber-receipts')
    @click.option('--tenant-id', type=int, required=True, help='Tenant whose receipts to renumber')
    @click.option('--dry-run', is_flag=True, help='Only show the numbering gaps')
    def renumber_receipts_command(tenant_id, dry_run):
        """Renumber a tenant's receipts 1..N, oldest first."""
        from fiscal_sync.services.receipt_service import find_numbering_gaps, renumber_receipts

        session = get_session()
        if dry_run:
            report = find_numbering_gaps(session, tenant_id)
            click.echo(f"Receipts: {report['count']}  Max id: {report['max_id']}")
            click.echo(f"Missing: {report['missing'] or 'none'}")
            for old, new in sorted(report['renumber_preview'].items()):
                click.echo(f'   #{old} -> #{new}')
            return

        try:
            changed = renumber_receipts(session, tenant_id, user_id='cli')
        except FiscalSyncError as e:
            click.echo(click.style(f'❌ {e.message}', fg='red'))
            return

        click.echo(click.style(f'✅ Renumbered {len(changed)} receipts', fg='green'))
        for old, new in sorted(changed.items()):
            click.echo(f'   #{old} -> #{new}')

    @app.cli.command('process-refunds')
    @click.option('--tenant-id', type=int, default=None, help='Limit to one tenant')
    def process_refunds_command(tenant_id):
        """Retry refunds queued before their sale receipt existed."""
        from fiscal_sync.services.refund_queue_service import process_pending_refunds

        stats = process_pending_refunds(
            get_session(), tenant_id, max_attempts=current_app.config.get('REFUND_MAX_ATTEMPTS', 3)
        )
        click.echo(f"Processed: {stats['processed']}  Pending: {stats['still_pending']}  Failed: {stats['failed']}")
