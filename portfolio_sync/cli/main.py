"""
Portfolio Sync CLI - Main entry point.
Built with Click for a rich command-line interface.
"""

import logging
import signal
import sys
import time

import click
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..common.config import SyncConfig
from ..common.engine import create_engine_from_config
from ..common.exceptions import PortfolioSyncError
from ..common.models import create_tables
from ..common.session import SessionManager

console = Console()

STATUS_STYLES = {
    'success': '[green]success[/green]',
    'error': '[red]error[/red]',
    'in_progress': '[yellow]in_progress[/yellow]',
    'pending': '[dim]pending[/dim]',
}


def _load_config(ctx) -> SyncConfig:
    if 'config' not in ctx.obj:
        path = ctx.obj.get('config_path')
        ctx.obj['config'] = SyncConfig.from_yaml(path) if path else SyncConfig.from_env()
    return ctx.obj['config']


def _session_manager(ctx) -> SessionManager:
    if 'session_manager' not in ctx.obj:
        engine = create_engine_from_config(_load_config(ctx).database)
        create_tables(engine)
        ctx.obj['session_manager'] = SessionManager(engine)
    return ctx.obj['session_manager']


def _orchestrator(ctx):
    from ..scheduler.orchestrator import SyncOrchestrator

    if 'orchestrator' not in ctx.obj:
        ctx.obj['orchestrator'] = SyncOrchestrator(_session_manager(ctx), _load_config(ctx))
    return ctx.obj['orchestrator']


def _organization(ctx, organization_id):
    return organization_id or _load_config(ctx).default_organization_id


@click.group()
@click.version_option(version=__version__, prog_name='portfolio-sync')
@click.option('--config', '-c', 'config_path', default=None,
              help='Path to a YAML config file (environment variables when omitted)')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """Loan portfolio sync and scoring - run syncs, recalculate scores, serve the API."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault('config_path', config_path)


# =============================================================================
# Database Commands
# =============================================================================

@cli.group()
def db():
    """Manage the database schema."""
    pass


@db.command('init')
@click.pass_context
def db_init(ctx):
    """Create all tables."""
    config = _load_config(ctx)
    _session_manager(ctx)
    console.print(f"[green]Tables created ({config.database.db_type.value})[/green]")


# =============================================================================
# Sync Commands
# =============================================================================

@cli.group()
def sync():
    """Run and inspect portfolio syncs."""
    pass


@sync.command('run')
@click.option('--org', '-o', 'organization_id', help='Organization id (DEFAULT_ORGANIZATION_ID when omitted)')
@click.option('--source', '-s', help='Local path or URL (EXCEL_DATA_URL when omitted)')
@click.pass_context
def sync_run(ctx, organization_id, source):
    """Run a sync in the foreground."""
    organization_id = _organization(ctx, organization_id)
    console.print(f"[yellow]Syncing '{organization_id}'...[/yellow]")

    try:
        result = _orchestrator(ctx).run_sync(organization_id, source)
    except PortfolioSyncError as e:
        console.print(f"[red]Sync not started: {e}[/red]")
        sys.exit(1)

    report = result.quality_report
    table = Table(title=f"Sync {result.run_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", STATUS_STYLES.get(result.status, result.status))
    table.add_row("Records processed", str(result.records_processed))
    table.add_row("New or changed", str(result.changed_records))
    table.add_row("Warnings", str(len(report.get('warnings', []))))
    table.add_row("Errors", str(len(report.get('errors', []))))
    table.add_row("Provisioned officers", str(len(result.provisioned_users)))
    if result.error_message:
        table.add_row("Error", f"[red]{result.error_message}[/red]")
    console.print(table)

    for warning in report.get('warnings', []):
        console.print(f"[yellow]WARNING[/yellow] {warning}")
    for error in report.get('errors', []):
        console.print(f"[red]ERROR[/red] {error}")

    if not result.success:
        sys.exit(1)


@sync.command('status')
@click.option('--org', '-o', 'organization_id', help='Organization id')
@click.pass_context
def sync_status(ctx, organization_id):
    """Show the latest sync run."""
    organization_id = _organization(ctx, organization_id)
    run = _orchestrator(ctx).latest_run(organization_id)
    if run is None:
        console.print(f"[dim]'{organization_id}' has never been synced[/dim]")
        return

    table = Table(title=f"Latest sync for '{organization_id}'")
    table.add_column("ID", style="dim")
    table.add_column("Status", style="green")
    table.add_column("Progress", style="magenta")
    table.add_column("Step", style="yellow")
    table.add_column("Records", style="blue")
    table.add_column("Triggered By", style="dim")
    table.add_row(
        run['id'],
        STATUS_STYLES.get(run['status'], run['status']),
        f"{run['progress_percentage']}%",
        run['current_step'] or '-',
        str(run['records_processed']),
        run['triggered_by'],
    )
    console.print(table)
    if run['error_message']:
        console.print(f"[red]{run['error_message']}[/red]")


@sync.command('reset')
@click.option('--org', '-o', 'organization_id', help='Organization id')
@click.pass_context
def sync_reset(ctx, organization_id):
    """Mark stuck runs as failed and release the sync lease."""
    organization_id = _organization(ctx, organization_id)
    count = _orchestrator(ctx).reset_stuck_runs(organization_id)
    console.print(f"[green]Reset {count} stuck run(s) for '{organization_id}'[/green]")


# =============================================================================
# Score Commands
# =============================================================================

@cli.group()
def scores():
    """Recalculate and repair client scores."""
    pass


@scores.command('recalculate')
@click.option('--org', '-o', 'organization_id', help='Organization id')
@click.pass_context
def scores_recalculate(ctx, organization_id):
    """Rescore every client of an organization with its current weights."""
    organization_id = _organization(ctx, organization_id)
    summary = _orchestrator(ctx).recalculation.recalculate(organization_id)

    table = Table(title=f"Recalculation for '{organization_id}'")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green")
    for name, value in summary.to_dict().items():
        table.add_row(name.replace('_', ' ').capitalize(), str(value))
    console.print(table)


@scores.command('repair-classifications')
@click.option('--org', '-o', 'organization_id', help='Organization id (all organizations when omitted)')
@click.pass_context
def scores_repair(ctx, organization_id):
    """Rewrite classifications that disagree with the stored urgency score."""
    result = _orchestrator(ctx).recalculation.repair_classifications(organization_id)
    console.print(f"[green]Updated {result['updated']} of {result['total']} classifications[/green]")


# =============================================================================
# Service Commands
# =============================================================================

@cli.group()
def scheduler():
    """Run the periodic sync scheduler."""
    pass


@scheduler.command('start')
@click.pass_context
def scheduler_start(ctx):
    """Start the scheduler in the foreground. Press Ctrl+C to stop."""
    from ..scheduler.engine import SyncScheduler

    engine = SyncScheduler(_load_config(ctx), _orchestrator(ctx))
    engine.start()

    table = Table(title="Scheduled Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Trigger", style="yellow")
    table.add_column("Next Run", style="green")
    for job in engine.get_jobs():
        table.add_row(job['name'], job['trigger'], job['next_run'] or '-')
    console.print(table)
    console.print("[green]Running in foreground mode. Press Ctrl+C to stop.[/green]")

    def signal_handler(signum, frame):
        console.print("\n[yellow]Shutting down...[/yellow]")
        engine.stop(wait=True)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    while engine.running:
        time.sleep(1)


@cli.command('web')
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', '-p', default=5000, help='Port')
@click.option('--debug', is_flag=True, help='Enable Flask debug mode')
@click.pass_context
def web(ctx, host, port, debug):
    """Serve the REST API."""
    from ..web.app import create_app

    app = create_app(_load_config(ctx), _session_manager(ctx), orchestrator=_orchestrator(ctx))
    app.run(host=host, port=port, debug=debug)


if __name__ == '__main__':
    cli()
