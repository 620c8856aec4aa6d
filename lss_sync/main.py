# SPDX-License-Identifier: AGPL-3.0-or-later
"""
LSS Sync - CLI Entry Point

Command-line interface for the mission synchronization service.

Usage:
    # Run API, live stream and scraper
    lss-sync serve

    # Run the scraper only
    lss-sync daemon

    # Run a single mission cycle
    lss-sync sync-once

    # Show status
    lss-sync status
"""

import asyncio
import logging

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from lss_sync.api import create_app
from lss_sync.config import settings
from lss_sync.exceptions import LoginExhaustedError
from lss_sync.metrics import metrics
from lss_sync.scheduler import SyncScheduler, run_scheduler
from lss_sync.storage.database import DatabaseStorage
from lss_sync.sync.orchestrator import SyncOrchestrator

app = typer.Typer(
    name="lss-sync",
    help="Live mission synchronization for Leitstellenspiel alliances",
    add_completion=False,
)
console = Console()


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]LSS Sync[/bold blue]\n"
        "[dim]Live mission synchronization for Leitstellenspiel alliances[/dim]",
        border_style="blue",
    ))
    console.print()


def configure_logging(level: str | None = None) -> None:
    """Route log records through Rich."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def require_credentials() -> None:
    """Exit when no game account is configured."""
    if not settings.has_credentials:
        console.print("[red]Error:[/red] LSS_EMAIL and LSS_PASSWORD must be set")
        raise typer.Exit(1)


async def run_service(host: str, port: int, scrape: bool) -> None:
    """Run the API server, and the scheduler when scraping is enabled."""
    async with SyncOrchestrator() as orchestrator:
        scheduler = SyncScheduler(orchestrator) if scrape else None
        api = create_app(
            orchestrator.storage,
            orchestrator.broadcaster,
            orchestrator.reconciler,
            scheduler=scheduler,
        )
        server = uvicorn.Server(uvicorn.Config(
            api,
            host=host,
            port=port,
            log_level=settings.log_level.lower(),
        ))

        if settings.metrics_enabled:
            await metrics.start_server(port=settings.metrics_port)

        tasks = {asyncio.create_task(server.serve(), name="api")}
        if scheduler is not None:
            tasks.add(asyncio.create_task(scheduler.run_forever(), name="scheduler"))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            server.should_exit = True
            if scheduler is not None:
                await scheduler.stop()
            await asyncio.gather(*tasks, return_exceptions=True)
            await metrics.stop_server()

        for task in done:
            task.result()


@app.command()
def serve(
    host: str = typer.Option(settings.api_host, "--host", help="API bind address"),
    port: int = typer.Option(settings.api_port, "--port", "-p", help="API port"),
    no_scrape: bool = typer.Option(
        False, "--no-scrape", help="Only serve the API (ingest and live stream)"
    ),
) -> None:
    """
    Run the API with the live stream and the scraper.

    Without game credentials only the ingest endpoint and the live stream
    are served.
    """
    configure_logging()
    print_banner()

    scrape = settings.has_credentials and not no_scrape
    if not scrape:
        console.print("[yellow]Scraper disabled, serving ingest and live stream only[/yellow]")

    console.print(f"  API: http://{host}:{port}")
    console.print(f"  Live stream: http://{host}:{port}/api/stream")
    if settings.metrics_enabled:
        console.print(f"  Metrics server: http://0.0.0.0:{settings.metrics_port}/metrics")
    console.print()

    try:
        asyncio.run(run_service(host, port, scrape))
    except LoginExhaustedError as e:
        console.print(f"\n[red]Stopped: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Service stopped by user[/yellow]")
        raise typer.Exit(130)


@app.command()
def daemon(
    metrics_port: int = typer.Option(
        settings.metrics_port, "--metrics-port", help="Port for Prometheus metrics server"
    ),
) -> None:
    """
    Start the sync scheduler without the API.

    Runs continuously, performing:
    - Mission cycles (default: every 10 seconds)
    - Alliance stat syncs (default: every 5 minutes)
    - Member syncs (default: every minute)
    - Retention sweep once daily (default: 4 AM)

    Live events are still relayed to Redis.
    """
    configure_logging()
    print_banner()
    require_credentials()

    async def run_daemon() -> None:
        async with SyncOrchestrator() as orchestrator:
            await run_scheduler(orchestrator, metrics_port=metrics_port)

    try:
        asyncio.run(run_daemon())
    except LoginExhaustedError as e:
        console.print(f"\n[red]Stopped: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        raise typer.Exit(130)


@app.command("sync-once")
def sync_once() -> None:
    """
    Log in and run a single mission cycle.

    Prints the snapshot statistics and the resulting changes.
    """
    configure_logging()
    print_banner()
    require_credentials()

    async def run_cycle() -> bool:
        async with SyncOrchestrator() as orchestrator:
            await orchestrator.start_browser()
            result = await orchestrator.run_mission_cycle()
            orchestrator.print_result(result)
            return result.success

    try:
        success = asyncio.run(run_cycle())
    except LoginExhaustedError as e:
        console.print(f"\n[red]Login failed: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Sync interrupted by user[/yellow]")
        raise typer.Exit(130)

    if not success:
        raise typer.Exit(1)


@app.command()
def retention() -> None:
    """
    Run the retention sweep now.

    Deletes stale incidents and old activity entries and downsamples old
    alliance stat points.
    """
    configure_logging()
    print_banner()

    async def run_sweep() -> None:
        async with SyncOrchestrator() as orchestrator:
            result = await orchestrator.retention.run()
            console.print("[green]Retention sweep finished[/green]")
            console.print(f"  Incidents deleted:      {result.incidents_deleted:,}")
            console.print(f"  Activity entries:       {result.activity_deleted:,}")
            console.print(f"  Stat points aggregated: {result.stats_aggregated:,}")

    try:
        asyncio.run(run_sweep())
    except Exception as e:
        console.print(f"[red]Retention sweep failed: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def status() -> None:
    """
    Show database statistics.

    Displays row counts for all tables.
    """
    print_banner()

    async def run_status() -> None:
        try:
            async with DatabaseStorage() as storage:
                stats = await storage.get_stats()

                table = Table(show_header=True, header_style="bold")
                table.add_column("Table", style="cyan")
                table.add_column("Rows", justify="right", style="green")

                for name, count in stats.items():
                    table.add_row(name.replace("_", " ").title(), f"{count:,}")

                console.print(table)
        except Exception as e:
            console.print(f"[red]Could not connect to database: {e}[/red]")

    console.print("[bold]Configuration:[/bold]")
    console.print(f"  Database: {settings.database_url.split('@')[-1]}")
    console.print(f"  Redis: {settings.redis_url}")
    console.print(f"  Game: {settings.lss_base_url}")
    console.print(f"  Account: {settings.lss_email or '[dim]not configured[/dim]'}")
    console.print()

    asyncio.run(run_status())


@app.command("init-db")
def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables if they don't exist.
    """
    print_banner()
    console.print("[blue]Initializing database schema...[/blue]")

    async def run_init() -> None:
        async with DatabaseStorage():
            console.print("[green]Database schema initialized successfully![/green]")

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
