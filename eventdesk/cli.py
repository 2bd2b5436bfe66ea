"""Typer CLI for EventDesk."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    EVENT_ID_WIDTH,
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .errors import ExhaustionError
from .identifiers import issue_event_id
from .lifecycle import complete_finished_events
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import bootstrap_admin, init_db, upgrade_database

app = typer.Typer(help="EventDesk command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_read_only(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_read_only(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("create-admin")
def create_admin(
    email: str = typer.Argument(..., help="Email address of the administrator"),
    full_name: str | None = typer.Option(None, "--full-name", help="Display name"),
) -> None:
    """Create the first administrator or promote an existing profile."""
    try:
        init_db()
        fields = {"full_name": full_name} if full_name else {}
        profile = bootstrap_admin(email, **fields)
    except OperationalError as exc:
        _exit_if_read_only(exc, "create an administrator")
        raise
    typer.echo(f"{profile.email} is an admin.")
    typer.echo(f"API token: {profile.api_token}")


@app.command("issue-id")
def issue_id(
    count: int = typer.Option(1, "--count", min=1, help="How many identifiers"),
) -> None:
    """Print identifiers not used by any event (nothing is reserved)."""
    init_db()
    try:
        with get_session() as session:
            identifiers = [issue_event_id(session) for _ in range(count)]
    except ExhaustionError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for identifier in identifiers:
        typer.echo(identifier)


@app.command("complete-events")
def complete_events() -> None:
    """Mark published events that have ended as completed."""
    init_db()
    stats = complete_finished_events()
    typer.echo(f"Auto-complete finished: {stats}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "eventdesk.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting EventDesk on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    organizers: int = typer.Option(
        settings.seed_organizers,
        "--organizers",
        min=0,
        help="Number of organizers to create",
    ),
    events_per_organizer: int = typer.Option(
        settings.seed_events_per_organizer,
        "--events-per-organizer",
        min=1,
        help="Events to create for each organizer",
    ),
    participants: int = typer.Option(
        settings.seed_participants,
        "--participants",
        min=0,
        help="Number of participants to create and register",
    ),
):
    """Populate the database with fake organizers, events and registrations."""
    stats = seed_fake_data(
        organizer_count=organizers,
        events_per_organizer=events_per_organizer,
        participant_count=participants,
    )
    typer.echo(
        f"Seed complete: {stats['organizers']} organizers, {stats['events']} events, "
        f"{stats['participants']} participants, {stats['registrations']} "
        f"registrations ({stats['rejected']} rejected)."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    event_id_length: int | None = typer.Option(
        None,
        "--event-id-length",
        min=1,
        max=EVENT_ID_WIDTH,
        help="Characters per event identifier",
    ),
    event_id_max_attempts: int | None = typer.Option(
        None,
        "--event-id-max-attempts",
        min=1,
        help="Identifier probes before giving up",
    ),
    admission_max_attempts: int | None = typer.Option(
        None,
        "--admission-max-attempts",
        min=1,
        help="Attempts per admission when the store is busy",
    ),
    busy_timeout: float | None = typer.Option(
        None,
        "--sqlite-busy-timeout",
        min=0.0,
        help="Seconds a SQLite connection waits for the write lock",
    ),
    required_fields: str | None = typer.Option(
        None,
        "--required-profile-fields",
        help="Comma-separated profile fields required to register",
    ),
    notifications_enabled: bool | None = typer.Option(
        None,
        "--enable-notifications/--disable-notifications",
        help="Toggle in-app notifications",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (auto-complete, notifications)",
    ),
    auto_complete_minutes: int | None = typer.Option(
        None,
        "--auto-complete-minutes",
        min=1,
        help="Minutes between auto-complete runs",
    ),
    registrations_per_page: int | None = typer.Option(
        None, "--registrations-per-page", min=1, help="Registration list page size"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventdesk.toml (default: ./eventdesk.toml)"
    ),
    seed_organizers: int | None = typer.Option(
        None, "--seed-organizers", min=0, help="Default seed-data organizers"
    ),
    seed_events_per_organizer: int | None = typer.Option(
        None,
        "--seed-events-per-organizer",
        min=1,
        help="Default seed-data events/organizer",
    ),
    seed_participants: int | None = typer.Option(
        None, "--seed-participants", min=0, help="Default seed-data participants"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "event_id_length": event_id_length,
        "event_id_max_attempts": event_id_max_attempts,
        "admission_max_attempts": admission_max_attempts,
        "sqlite_busy_timeout_seconds": busy_timeout,
        "required_profile_fields": required_fields,
        "notifications_enabled": notifications_enabled,
        "enable_scheduler": enable_scheduler,
        "auto_complete_interval_minutes": auto_complete_minutes,
        "registrations_per_page": registrations_per_page,
        "app_host": host,
        "app_port": port,
        "seed_organizers": seed_organizers,
        "seed_events_per_organizer": seed_events_per_organizer,
        "seed_participants": seed_participants,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
