"""CLI commands for the Autopilot trigger service."""

import asyncio
import sys

import click
import uvicorn
from autopilot_common.base import BaseModel
from autopilot_common.config import Database, get_app_settings, get_db_settings
from autopilot_common.logging import setup_logging
from sqlalchemy import text

# Registers the trigger tables on the shared metadata
import autopilot_triggers.infrastructure.orm  # noqa: F401
from autopilot_api.api.deps import build_services


@click.group()
def cli():
    """Autopilot trigger service CLI - API server, scheduler and database setup."""
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind the server to")  # noqa: S104
@click.option("--port", default=8000, help="Port to bind the server to")
@click.option("--reload/--no-reload", default=False, help="Enable/disable auto-reload")
@click.option("--log-level", default="info", help="Logging level")
@click.option("--workers", default=1, help="Number of worker processes")
def serve(host: str, port: int, reload: bool, log_level: str, workers: int):
    """Start the API server."""
    click.echo(f"🚀 Starting trigger API server on {host}:{port}")
    click.echo(f"   Reload: {reload}, Log Level: {log_level}, Workers: {workers}")

    uvicorn.run(
        app="autopilot_api.main:app",
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,  # Workers > 1 incompatible with reload
        log_level=log_level,
    )


async def _init_db() -> None:
    database = Database(get_db_settings())
    try:
        async with database.engine.begin() as connection:
            await connection.execute(text("SELECT 1"))
            await connection.run_sync(BaseModel.metadata.create_all)
    finally:
        await database.dispose()


@cli.command("init-db")
def init_db():
    """Create the trigger tables that do not exist yet."""
    click.echo("🔄 Creating database tables...")
    try:
        asyncio.run(_init_db())
    except Exception as e:
        click.echo(f"❌ Database setup failed: {e}")
        sys.exit(1)
    click.echo("✅ Database tables are in place")


async def _run_scheduler(interval: float, once: bool, catchup_limit: int) -> None:
    services = build_services(Database())
    try:
        while True:
            events = await services.schedule_runner.fire_due()
            results = await services.gmail_adapter.run_pending_catchups(limit=catchup_limit)
            if events or results:
                click.echo(
                    f"⏰ Fired {len(events)} schedule(s), ran {len(results)} Gmail catch-up(s)"
                )
            if once:
                return
            await asyncio.sleep(interval)
    finally:
        await services.database.dispose()


@cli.command("run-scheduler")
@click.option("--interval", default=30.0, help="Seconds between polls")
@click.option("--once", is_flag=True, default=False, help="Run a single poll and exit")
@click.option("--catchup-limit", default=100, help="Max Gmail catch-ups per poll")
def run_scheduler(interval: float, once: bool, catchup_limit: int):
    """Fire due schedules and run pending Gmail catch-ups in a loop."""
    app_settings = get_app_settings()
    setup_logging(app_settings.LOG_LEVEL, app_settings.STRUCTURED_LOGGING)
    click.echo(f"🚀 Starting scheduler (interval {interval}s)")
    try:
        asyncio.run(_run_scheduler(interval, once, catchup_limit))
    except KeyboardInterrupt:
        click.echo("👋 Scheduler stopped")


if __name__ == "__main__":
    cli()
