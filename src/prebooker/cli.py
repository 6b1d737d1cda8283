"""Click CLI commands for Prebooker."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prebooker.config import Settings, load_dotenv, load_settings
from prebooker.errors import PrebookerError
from prebooker.keepalive import KeepAliveReport
from prebooker.notifications import display_report
from prebooker.scheduler import PrecisionScheduler
from prebooker.security_token import generate_token
from prebooker.services import build_services
from prebooker.sweep import SweepReport

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(ctx: click.Context) -> Settings:
    try:
        return load_settings(ctx.obj.get("config"))
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "-c", "--config", "config_path", type=click.Path(exists=True), help="YAML tunables file."
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Prebooker: books gym classes the instant they open."""
    _setup_logging(verbose)
    load_dotenv()
    ctx.obj = {"config": config_path}


@main.command()
@click.option("--port", default=8000, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str) -> None:
    """Run the webhook / cron HTTP service."""
    import uvicorn

    from prebooker.web.app import create_app

    console.print(f"[bold green]Prebooker[/bold green] -> http://{host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


def _display_sweep(report: SweepReport) -> None:
    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column(style="bold")
    summary.add_column()
    summary.add_row("Due", str(report.total))
    summary.add_row("Completed", f"[green]{report.completed}[/green]")
    summary.add_row("Failed", f"[red]{report.failed}[/red]")
    summary.add_row("Skipped", str(report.skipped))
    summary.add_row("Deferred", f"[yellow]{report.deferred}[/yellow]")
    console.print(Panel(summary, title="Sweep"))

    if report.items:
        items = Table()
        items.add_column("Intent")
        items.add_column("Phase")
        items.add_column("Status")
        items.add_column("Message")
        for item in report.items:
            items.add_row(item["intentId"], item["phase"], item["status"], item["message"])
        console.print(items)
    for error in report.errors:
        console.print(f"[red]{error}[/red]")


@main.command()
@click.option("--batch-size", type=int, default=None, help="Max intents to process.")
@click.option("--threshold", type=float, default=0.0, help="Look-ahead in seconds.")
@click.pass_context
def sweep(ctx: click.Context, batch_size: int | None, threshold: float) -> None:
    """Run one sweep pass over due prebookings."""
    settings = _load(ctx)

    async def _sweep() -> SweepReport:
        services = await build_services(settings)
        async with services.executor() as executor:
            report = await services.sweep(executor).run(
                batch_size=batch_size, threshold_seconds=threshold
            )
        await services.recorder.drain()
        return report

    try:
        report = asyncio.run(_sweep())
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    _display_sweep(report)
    if report.failed:
        sys.exit(1)


@main.command()
@click.argument("prebooking_id")
@click.pass_context
def execute(ctx: click.Context, prebooking_id: str) -> None:
    """Run one prebooking now, as the webhook would (waits for its slot)."""
    settings = _load(ctx)

    async def _execute():
        services = await build_services(settings)
        intent = await services.intents.get(prebooking_id)
        if intent is None:
            raise PrebookerError(f"Prebooking {prebooking_id} not found")
        async with services.executor() as executor:
            report = await executor.execute(intent)
        await services.recorder.drain()
        return report

    try:
        report = asyncio.run(_execute())
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    display_report(report)
    if not report.success:
        sys.exit(1)


@main.command()
@click.argument("prebooking_id")
@click.pass_context
def cancel(ctx: click.Context, prebooking_id: str) -> None:
    """Cancel a pending prebooking and its broker message."""
    settings = _load(ctx)

    async def _cancel():
        services = await build_services(settings)
        async with services.trigger() as trigger:
            return await trigger.cancel_intent(prebooking_id)

    try:
        intent = asyncio.run(_cancel())
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"[green]Cancelled[/green] {intent.id} ({intent.class_label or intent.class_type})")


@main.command()
@click.argument("prebooking_id")
@click.argument("execute_at", type=int)
@click.pass_context
def token(ctx: click.Context, prebooking_id: str, execute_at: int) -> None:
    """Print the security token for (PREBOOKING_ID, EXECUTE_AT epoch ms)."""
    settings = _load(ctx)
    try:
        console.print(generate_token(settings.prebooking_secret, prebooking_id, execute_at))
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@main.command("refresh-tokens")
@click.pass_context
def refresh_tokens(ctx: click.Context) -> None:
    """Refresh every stale platform session once."""
    settings = _load(ctx)

    async def _refresh() -> KeepAliveReport:
        services = await build_services(settings)
        async with services.keepalive() as keepalive:
            return await keepalive.run(services.scheduler.now())

    try:
        report = asyncio.run(_refresh())
    except PrebookerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(
        f"Sessions: {report.total}  updated [green]{report.updated}[/green]  "
        f"skipped {report.skipped}  failed [red]{report.failed}[/red]  "
        f"deleted {report.deleted}"
    )
    for error in report.errors:
        console.print(f"[red]{error}[/red]")


@main.command()
@click.option("--server", default="pool.ntp.org", help="NTP server.")
def clock(server: str) -> None:
    """Check the system clock offset against NTP."""
    offset = PrecisionScheduler().check_ntp_offset(server)
    if offset is None:
        console.print(f"[yellow]Could not reach {server}[/yellow]")
        sys.exit(1)
    if abs(offset) > 0.5:
        console.print(
            f"[red]Warning: System clock is off by {offset:.1f}s! "
            f"Exact-instant fires will be late or early.[/red]"
        )
        sys.exit(1)
    console.print(f"Clock offset: {offset * 1000:.0f}ms (OK)")
