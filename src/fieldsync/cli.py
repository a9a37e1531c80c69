"""Command-line interface with Rich formatting."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from . import __version__
from .config import Settings, load_settings, create_example_config
from .database import DatabaseManager
from .errors import FieldSyncError
from .models import ConflictPolicy, FieldMapping, SyncAllReport, now_ms
from .quote_sync import QuoteSyncEngine
from .services import CRMGateway, FieldServiceGateway
from .sync_engine import AppointmentSyncEngine
from .team_calendars import TeamCalendarManager

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_settings(settings: Settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nPlease set these environment variables or create a configuration file.\n" +
            "Use [bold]fieldsync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _create_engines(
    settings: Settings,
    db_manager: Optional[DatabaseManager] = None
) -> Tuple[AppointmentSyncEngine, QuoteSyncEngine]:
    """Wire the database, both gateways and both engines from settings."""
    if db_manager is None:
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
    fss_gateway = FieldServiceGateway(settings)
    crm_gateway = CRMGateway(settings)
    sync_engine = AppointmentSyncEngine(settings, db_manager, fss_gateway, crm_gateway)
    quote_engine = QuoteSyncEngine(settings, db_manager, fss_gateway, crm_gateway)
    return sync_engine, quote_engine


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """fieldsync - field-service / CRM appointment and quote reconciliation.

    Keeps appointments consistent between the field-service system and the
    CRM calendars of each location, without double-booking interchangeable
    teams, and propagates FSS quotes into CRM contacts and opportunities.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database tables."""
    settings = ctx.obj['settings']
    try:
        DatabaseManager(settings).init_db()
        console.print(f"[green]✓ Database initialized[/green] ({settings.database_url})")
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        sys.exit(1)


def _display_sync_report(report: SyncAllReport, compact: bool = False) -> None:
    """Display a full sync report."""
    if report.reason:
        console.print(f"[yellow]Location {report.location_id} skipped: {report.reason}[/yellow]")
        return

    if compact:
        console.print(
            f"{report.location_id}: [green]{report.synced} synced[/green], "
            f"{report.skipped} skipped, [red]{report.errors} errors[/red]"
        )
        return

    table = Table(show_header=True, header_style="bold magenta", title=f"Sync {str(report.sync_id)[:8]}")
    table.add_column("Action")
    table.add_column("Direction")
    table.add_column("FSS ID", style="blue")
    table.add_column("CRM ID", style="green")
    table.add_column("Detail")

    for result in report.results:
        style = "red" if not result.success else ("green" if result.action.value in ('created', 'updated', 'linked') else "dim")
        detail = result.error or result.reason or ""
        if result.error_code:
            detail = f"{result.error_code.value}: {detail}"
        table.add_row(
            f"[{style}]{result.action.value}[/{style}]",
            result.direction.value if result.direction else "",
            result.fss_appointment_id or "",
            result.crm_appointment_id or "",
            detail
        )

    console.print(table)
    duration = ""
    if report.completed_at:
        duration = f" in {(report.completed_at - report.started_at).total_seconds():.1f}s"
    console.print(
        f"[bold]Summary:[/bold] {report.synced} synced, {report.skipped} skipped, "
        f"{report.errors} errors{duration}"
    )


@cli.command()
@click.option('--location', '-l', required=True, help='Location ID')
@async_command
async def sync(ctx, location):
    """Reconcile all appointments of a location."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        sync_engine, _ = _create_engines(settings)
        async with sync_engine:
            console.print(f"🚀 Synchronizing location {location}...")
            report = await sync_engine.sync_all(location)
        _display_sync_report(report)
        if report.errors:
            sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except FieldSyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        sys.exit(1)


def _display_poll_results(results, compact: bool = False) -> None:
    table = Table(show_header=True, header_style="bold magenta", title="Quote Poll")
    table.add_column("Location", style="cyan")
    table.add_column("Status")
    table.add_column("Synced", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Errors", justify="right")

    for result in results:
        if result.skipped:
            status = f"[dim]skipped: {result.reason}[/dim]"
        elif result.discovery_error_code:
            status = f"[yellow]{result.discovery_error_code.value}[/yellow]"
        else:
            status = "[green]polled[/green]"
        if compact and result.skipped:
            continue
        table.add_row(
            result.location_id, status,
            str(result.quotes_synced), str(result.quotes_skipped), str(result.errors)
        )

    console.print(table)
    for result in results:
        for detail in result.error_details:
            code = detail.error_code.value if detail.error_code else 'error'
            console.print(f"[red]  {result.location_id} quote {detail.quote_id}: {code} {detail.error}[/red]")


@cli.command('poll-quotes')
@async_command
async def poll_quotes(ctx):
    """Poll every location whose quote poll is due."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    sync_engine, quote_engine = _create_engines(settings)
    async with sync_engine:
        results = await quote_engine.poll_due_locations()
    _display_poll_results(results)


@cli.command('sync-quote')
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--quote', '-q', 'quote_id', required=True, help='FSS quote ID')
@async_command
async def sync_quote(ctx, location, quote_id):
    """Propagate one FSS quote into the CRM."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    sync_engine, quote_engine = _create_engines(settings)
    async with sync_engine:
        result = await quote_engine.sync_quote(location, quote_id)

    if not result.success:
        console.print(f"[red]Quote {quote_id} failed ({result.error_code.value}): {result.error}[/red]")
        sys.exit(1)
    if result.skipped:
        console.print(f"[dim]Quote {quote_id} already synced and unchanged (contact {result.contact_id})[/dim]")
    else:
        console.print(f"[green]✓ Quote {quote_id}[/green] → contact {result.contact_id}, opportunity {result.opportunity_id or '-'}")


@cli.command()
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--start', '-s', required=True, help='Window start (ISO 8601)')
@click.option('--end', '-e', required=True, help='Window end (ISO 8601)')
@click.option('--buffer', '-b', type=int, default=None, help='Buffer minutes around existing appointments')
@click.option('--team', '-t', help='Check a single team instead of all enabled teams')
@click.option('--exclude', '-x', multiple=True, help='Appointment IDs to ignore')
@async_command
async def availability(ctx, location, start, end, buffer, team, exclude):
    """Check which teams are free for a window."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    buffer_minutes = settings.default_buffer_minutes if buffer is None else buffer

    sync_engine, _ = _create_engines(settings)
    try:
        async with sync_engine:
            checker = sync_engine.availability
            if team:
                result = await checker.check_team_availability(
                    team, start, end, location, exclude_appointment_ids=exclude, buffer_minutes=buffer_minutes
                )
                free = [team] if result.available else []
                conflicts = result.conflicts
            else:
                result = await checker.check_availability(
                    start, end, location, exclude_appointment_ids=exclude, buffer_minutes=buffer_minutes
                )
                free = [t.team_name or t.team_id for t in result.available_teams]
                conflicts = result.conflicts
    except FieldSyncError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if free:
        console.print(f"[green]Available teams:[/green] {', '.join(free)}")
    else:
        console.print("[red]No team is available for this window[/red]")

    if conflicts:
        table = Table(show_header=True, header_style="bold magenta", title="Conflicts")
        table.add_column("Team", style="cyan")
        table.add_column("Appointment")
        table.add_column("Overlap")
        table.add_column("Window")
        for conflict in conflicts:
            if conflict.error:
                table.add_row(conflict.team_name or conflict.team_id, "", "[red]error[/red]", conflict.error)
                continue
            table.add_row(
                conflict.team_name or conflict.team_id,
                conflict.competing_appointment.id,
                conflict.overlap_type.value,
                f"{conflict.overlap_start:%H:%M} - {conflict.overlap_end:%H:%M}"
            )
        console.print(table)


@cli.command()
@click.option('--location', '-l', required=True, help='Location ID')
@click.pass_context
def status(ctx, location):
    """Show sync status for a location."""
    settings = ctx.obj['settings']

    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    with db_manager.get_session() as session:
        sync_status = db_manager.get_sync_status(session, location)
        config_row = db_manager.get_integration_config(session, location)
        config = config_row.to_model() if config_row else None

    table = Table(show_header=True, header_style="bold magenta", title=f"Location {location}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Integration", "enabled" if config and config.enabled else "disabled")
    table.add_row("Appointments tracked", str(sync_status['total_appointments']))
    for state, count in sync_status['by_state'].items():
        table.add_row(f"  {state}", str(count))
    table.add_row("Quotes synced", str(sync_status['quotes_synced']))
    table.add_row("Team mappings", f"{sync_status['enabled_team_mappings']}/{sync_status['team_mappings']} enabled")
    last_sync = sync_status['last_sync_at']
    table.add_row("Last sync", last_sync.strftime('%Y-%m-%d %H:%M:%S') if last_sync else "never")
    if config and config.last_appointment_sync_at:
        last_scheduled = datetime.fromtimestamp(config.last_appointment_sync_at / 1000)
        table.add_row("Last scheduled sync", last_scheduled.strftime('%Y-%m-%d %H:%M:%S'))
    if config and config.last_quote_poll_at:
        last_poll = datetime.fromtimestamp(config.last_quote_poll_at / 1000)
        table.add_row("Last quote poll", last_poll.strftime('%Y-%m-%d %H:%M:%S'))

    console.print(table)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Tick interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of ticks (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run appointment syncs and quote polls continuously."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    tick_minutes = interval or settings.daemon_interval_minutes
    console.print(f"[green]Starting fieldsync daemon[/green] - tick: {tick_minutes} minutes")

    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    runs = 0
    try:
        while True:
            if max_runs and runs >= max_runs:
                console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                break

            console.print(f"\n[blue]--- Tick {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

            try:
                sync_engine, quote_engine = _create_engines(settings, db_manager)
                async with sync_engine:
                    now = now_ms()
                    for report in await sync_engine.sync_due_locations(now):
                        _display_sync_report(report, compact=True)

                    poll_results = await quote_engine.poll_due_locations(now)
                    if any(not r.skipped for r in poll_results):
                        _display_poll_results(poll_results, compact=True)

                runs += 1

            except Exception as e:
                console.print(f"[red]Tick failed: {e}[/red]")
                if settings.debug:
                    console.print_exception()

            if max_runs and runs >= max_runs:
                break

            console.print(f"[dim]Next tick in {tick_minutes} minutes...[/dim]")
            await asyncio.sleep(tick_minutes * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)
    finally:
        db_manager.close()


@cli.group()
def mappings():
    """Team to calendar mapping commands."""
    pass


def _team_calendars(settings: Settings) -> TeamCalendarManager:
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return TeamCalendarManager(db_manager)


@mappings.command('list')
@click.option('--location', '-l', required=True, help='Location ID')
@click.pass_context
def list_mappings(ctx, location):
    """Show a location's team mappings."""
    team_calendars = _team_calendars(ctx.obj['settings'])
    rows = team_calendars.list_mappings(location)

    if not rows:
        console.print("[yellow]No team mappings configured[/yellow]")
        console.print("Use [bold]fieldsync mappings set[/bold] to create one")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Team Mappings")
    table.add_column("FSS Team", style="blue")
    table.add_column("CRM Calendar", style="green")
    table.add_column("Enabled", justify="center")

    for mapping in rows:
        table.add_row(
            mapping.fss_team_name or mapping.fss_team_id,
            mapping.crm_calendar_name or mapping.crm_calendar_id,
            "✅" if mapping.enabled else "❌"
        )
    console.print(table)


@mappings.command('set')
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--team', '-t', required=True, help='FSS team ID')
@click.option('--calendar', '-k', required=True, help='CRM calendar ID')
@click.option('--team-name', help='Team display name')
@click.option('--calendar-name', help='Calendar display name')
@click.option('--disabled', is_flag=True, help='Create the mapping disabled')
@click.pass_context
def set_mapping(ctx, location, team, calendar, team_name, calendar_name, disabled):
    """Create or replace the mapping of a team."""
    team_calendars = _team_calendars(ctx.obj['settings'])
    mapping = team_calendars.set_mapping(
        location, team, calendar,
        fss_team_name=team_name, crm_calendar_name=calendar_name, enabled=not disabled
    )
    console.print(f"[green]✓ Mapped[/green] {mapping.fss_team_name or mapping.fss_team_id} ↔️ {mapping.crm_calendar_name or mapping.crm_calendar_id}")


def _toggle(ctx, location: str, team: str, enabled: bool) -> None:
    team_calendars = _team_calendars(ctx.obj['settings'])
    mapping = team_calendars.set_enabled(location, team, enabled)
    if mapping is None:
        console.print(f"[red]No mapping for team {team}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ {'Enabled' if enabled else 'Disabled'} mapping for team {team}[/green]")


@mappings.command('enable')
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--team', '-t', required=True, help='FSS team ID')
@click.pass_context
def enable_mapping(ctx, location, team):
    """Enable a team mapping."""
    _toggle(ctx, location, team, True)


@mappings.command('disable')
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--team', '-t', required=True, help='FSS team ID')
@click.pass_context
def disable_mapping(ctx, location, team):
    """Disable a team mapping (the team stops taking new appointments)."""
    _toggle(ctx, location, team, False)


@mappings.command('delete')
@click.option('--location', '-l', required=True, help='Location ID')
@click.option('--team', '-t', required=True, help='FSS team ID')
@click.confirmation_option(prompt='Are you sure you want to delete this mapping?')
@click.pass_context
def delete_mapping(ctx, location, team):
    """Delete a team mapping."""
    team_calendars = _team_calendars(ctx.obj['settings'])
    if not team_calendars.delete_mapping(location, team):
        console.print(f"[red]No mapping for team {team}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Deleted mapping for team {team}[/green]")


@mappings.command('teams')
@click.option('--location', '-l', required=True, help='Location ID')
@async_command
async def unmapped_teams(ctx, location):
    """List FSS teams that have no mapping yet."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    team_calendars = _team_calendars(settings)
    async with FieldServiceGateway(settings) as fss_gateway:
        teams = await team_calendars.find_unmapped_teams(fss_gateway, location)

    if not teams:
        console.print("[green]Every FSS team is mapped[/green]")
        return
    for team in teams:
        console.print(f"• {team.team_name or '-'} [dim]({team.team_id})[/dim]")


@cli.group()
def location():
    """Per-location integration settings."""
    pass


@location.command('set')
@click.option('--location', '-l', 'location_id', required=True, help='Location ID')
@click.option('--enabled/--disabled', default=None, help='Enable the integration')
@click.option('--appointments/--no-appointments', default=None, help='Sync appointments')
@click.option('--appointment-interval', type=int, help='Appointment sync interval (minutes)')
@click.option('--conflict-resolution', '-r', type=click.Choice([p.value for p in ConflictPolicy]),
              help='Conflict resolution policy')
@click.option('--calendar', help='Default CRM calendar ID')
@click.option('--quotes/--no-quotes', default=None, help='Sync quotes')
@click.option('--quote-polling/--no-quote-polling', default=None, help='Poll for quotes')
@click.option('--quote-interval', type=int, help='Quote polling interval (minutes)')
@click.option('--opportunities/--no-opportunities', default=None, help='Create opportunities for quotes')
@click.option('--tag', 'tags', multiple=True, help='CRM tag applied to quote contacts (repeatable)')
@click.option('--prefix', help='Custom field prefix for unmapped quote fields')
@click.option('--pipeline', help='CRM pipeline ID for opportunities')
@click.option('--stage', help='CRM pipeline stage ID for opportunities')
@click.option('--field', 'fields', multiple=True, help='Field mapping FSS_FIELD=CRM_FIELD (repeatable)')
@click.pass_context
def set_location(ctx, location_id, enabled, appointments, appointment_interval, conflict_resolution,
                 calendar, quotes, quote_polling, quote_interval, opportunities, tags, prefix,
                 pipeline, stage, fields):
    """Create or update a location's integration config."""
    values = {
        'enabled': enabled,
        'sync_appointments': appointments,
        'appointment_sync_interval': appointment_interval,
        'appointment_conflict_resolution': ConflictPolicy(conflict_resolution) if conflict_resolution else None,
        'crm_calendar_id': calendar,
        'sync_quotes': quotes,
        'quote_polling_enabled': quote_polling,
        'quote_polling_interval': quote_interval,
        'create_opportunities': opportunities,
        'custom_field_prefix': prefix,
        'crm_pipeline_id': pipeline,
        'crm_pipeline_stage_id': stage,
    }
    values = {k: v for k, v in values.items() if v is not None}
    if tags:
        values['crm_tags'] = list(tags)
    if fields:
        mappings_list = []
        for item in fields:
            if '=' not in item:
                console.print(f"[red]Invalid field mapping {item!r}, expected FSS_FIELD=CRM_FIELD[/red]")
                sys.exit(1)
            fss_field, crm_field = item.split('=', 1)
            mappings_list.append(FieldMapping(fss_field=fss_field.strip(), crm_field=crm_field.strip()))
        values['field_mappings'] = mappings_list

    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    with db_manager.get_session() as session:
        config = db_manager.upsert_integration_config(session, location_id, **values).to_model()

    console.print(f"[green]✓ Saved config for location {location_id}[/green]")
    _display_location(config)


def _display_location(config) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=f"Location {config.location_id}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.model_dump().items():
        if key == 'field_mappings':
            value = ", ".join(f"{m['fss_field']}→{m['crm_field']}" for m in value) or "-"
        elif hasattr(value, 'value'):
            value = value.value
        table.add_row(key, str(value))
    console.print(table)


@location.command('show')
@click.option('--location', '-l', 'location_id', required=True, help='Location ID')
@click.pass_context
def show_location(ctx, location_id):
    """Show a location's integration config."""
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    with db_manager.get_session() as session:
        row = db_manager.get_integration_config(session, location_id)
        config = row.to_model() if row else None

    if config is None:
        console.print(f"[yellow]No config for location {location_id}[/yellow]")
        console.print("Use [bold]fieldsync location set[/bold] to create one")
        return
    _display_location(config)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            "[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
