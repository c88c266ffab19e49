"""Command-line interface for ScholarGuard."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
import structlog
from rich.console import Console
from rich.table import Table

from scholarguard import __version__
from scholarguard.adapters.registry import AdapterRegistry
from scholarguard.config import Config, load_config
from scholarguard.container import ScholarGuardContainer
from scholarguard.exceptions import NoCallableSourcesError, ScholarGuardError
from scholarguard.observability import configure_logging, start_metrics_server
from scholarguard.protocols import ScrapeRun, SweepReport

console = Console()
logger = structlog.get_logger(__name__)


def _load_config(ctx: click.Context) -> Config:
    config = load_config(ctx.obj["config_path"])
    if ctx.obj["log_level"]:
        config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(config.monitoring)
    return config


def _build_container(
    ctx: click.Context, adapters: Tuple[str, ...] = (), entry_points: bool = True
) -> ScholarGuardContainer:
    config = _load_config(ctx)
    registry = AdapterRegistry()
    if entry_points:
        registry.load_entry_points()
    for path in adapters:
        registry.load_path(path)
    return ScholarGuardContainer(config, config_path=ctx.obj["config_path"], registry=registry)


def _install_interrupt(event: asyncio.Event) -> None:
    """Set ``event`` on SIGINT/SIGTERM instead of raising KeyboardInterrupt."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop
            pass


def _print_json(data: Dict[str, Any]) -> None:
    console.print_json(json.dumps(data, default=str))


def _print_run(run: ScrapeRun) -> None:
    table = Table(title=f"Scrape run {run.run_id}" + (" (cancelled)" if run.cancelled else ""))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    for key in (
        "sources_attempted",
        "sources_succeeded",
        "sources_failed",
        "sources_blocked",
        "candidates_produced",
        "candidates_accepted",
        "candidates_rejected",
    ):
        table.add_row(key, str(getattr(run, key)))
    for reason, count in sorted(run.rejections_by_reason.items()):
        table.add_row(f"rejected: {reason}", str(count))
    console.print(table)
    for source, error in sorted(run.source_errors.items()):
        console.print(f"[red]{source}[/red]: {error}")


def _print_sweep(report: SweepReport) -> None:
    table = Table(title="Health sweep")
    table.add_column("Outcome", style="cyan")
    table.add_column("Records", style="magenta", justify="right")
    for key in ("total", "checked", "healthy", "repaired", "deactivated", "quarantined", "errors"):
        table.add_row(key, str(getattr(report, key)))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """ScholarGuard - validated scholarship ingestion."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--adapter", "adapters", multiple=True, help="Adapter to load as module:attribute (repeatable)")
@click.option("--no-entry-points", is_flag=True, help="Do not discover adapters from installed packages")
@click.option("--json", "as_json", is_flag=True, help="Print the run summary as JSON")
@click.pass_context
def run(ctx: click.Context, adapters: Tuple[str, ...], no_entry_points: bool, as_json: bool) -> None:
    """Run every source adapter once."""

    async def run_once() -> ScrapeRun:
        container = _build_container(ctx, adapters, entry_points=not no_entry_points)
        cancel_event = asyncio.Event()
        _install_interrupt(cancel_event)
        async with container.lifecycle():
            return await container.service.trigger_run(cancel_event=cancel_event)

    try:
        scrape_run = asyncio.run(run_once())
    except NoCallableSourcesError as e:
        console.print(f"[red]No callable sources: {e}[/red]")
        sys.exit(2)
    except ScholarGuardError as e:
        console.print(f"[red]Run failed: {e}[/red]")
        sys.exit(1)

    if as_json:
        _print_json(scrape_run.to_dict())
    else:
        _print_run(scrape_run)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the sweep report as JSON")
@click.pass_context
def sweep(ctx: click.Context, as_json: bool) -> None:
    """Re-validate every active scholarship once."""

    async def sweep_once() -> SweepReport:
        container = _build_container(ctx, entry_points=False)
        async with container.lifecycle():
            return await container.service.run_sweep()

    try:
        report = asyncio.run(sweep_once())
    except ScholarGuardError as e:
        console.print(f"[red]Sweep failed: {e}[/red]")
        sys.exit(1)

    if as_json:
        _print_json(report.to_dict())
    else:
        _print_sweep(report)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print breaker states as JSON")
@click.pass_context
def breakers(ctx: click.Context, as_json: bool) -> None:
    """Show the circuit breaker state of every source."""

    async def read_states() -> Dict[str, Dict[str, Any]]:
        container = _build_container(ctx)
        async with container.lifecycle():
            return await container.service.breaker_states()

    states = asyncio.run(read_states())
    if as_json:
        _print_json(states)
        return

    table = Table(title="Circuit breakers")
    table.add_column("Source", style="cyan")
    table.add_column("State", style="magenta")
    table.add_column("Failures", justify="right")
    table.add_column("Last error")
    for source, state in states.items():
        style = {"closed": "green", "half_open": "yellow", "open": "red"}.get(state["state"], "white")
        label = f"[{style}]{state['state']}[/{style}]"
        table.add_row(source, label, str(state["failure_count"]), state["last_error"] or "")
    console.print(table)


@cli.command("reset-breakers")
@click.argument("source", required=False)
@click.pass_context
def reset_breakers(ctx: click.Context, source: Optional[str]) -> None:
    """Close the breaker of SOURCE, or of every source."""

    async def reset() -> None:
        container = _build_container(ctx)
        async with container.lifecycle():
            if source:
                await container.service.reset_breaker(source)
            else:
                await container.service.reset_all_breakers()

    asyncio.run(reset())
    console.print(f"[green]Circuit breaker reset: {source or 'all sources'}[/green]")


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show ingestion statistics."""

    async def read_stats() -> Dict[str, Any]:
        container = _build_container(ctx, entry_points=False)
        async with container.lifecycle():
            return await container.service.ingestion_stats()

    try:
        _print_json(asyncio.run(read_stats()))
    except ScholarGuardError as e:
        console.print(f"[red]Cannot read statistics: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--adapter", "adapters", multiple=True, help="Adapter to load as module:attribute (repeatable)")
@click.pass_context
def schedule(ctx: click.Context, adapters: Tuple[str, ...]) -> None:
    """Run the sweep (and optional scrape) schedule until interrupted."""

    async def serve() -> None:
        container = _build_container(ctx, adapters)
        start_metrics_server(container.config.monitoring)
        stop = asyncio.Event()
        _install_interrupt(stop)
        async with container.lifecycle():
            scheduler = container.build_scheduler()
            scheduler.start()
            for job in scheduler.jobs():
                console.print(f"[cyan]{job['name']}[/cyan] next run: {job['next_run_time']}")
            try:
                await stop.wait()
            finally:
                scheduler.shutdown()
        console.print("[yellow]Scheduler stopped[/yellow]")

    asyncio.run(serve())


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
