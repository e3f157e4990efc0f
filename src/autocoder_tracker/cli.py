from __future__ import annotations

import asyncio
import json

import click

from autocoder_tracker import __version__
from autocoder_tracker.errors import ValidationError
from autocoder_tracker.utils.config import get_config
from autocoder_tracker.utils.logger import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="autocoder-tracker")
def main() -> None:
    """Autocoder Tracker: code requests reconciled against GitHub."""
    setup_logging(get_config().log_level)


@main.command()
def init() -> None:
    """Initialize the work item store."""
    from autocoder_tracker.app import AppServices

    async def _init() -> None:
        services = AppServices(get_config())
        await services.open()
        await services.close()
        click.echo(f"Work item store initialized at {services.config.data_path}")

    asyncio.run(_init())


@main.command()
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"], case_sensitive=False),
    default="stdio",
    show_default=True,
    help="MCP transport. HTTP transports also serve /api/events and /api/status.",
)
def serve(transport: str) -> None:
    """Start the tracker server with reconciliation enabled."""
    from autocoder_tracker.app import AppServices
    from autocoder_tracker.server import serve as run_server

    click.echo("Starting Autocoder Tracker...", err=True)
    asyncio.run(run_server(AppServices(get_config()), transport.lower()))


@main.command()
def reconcile() -> None:
    """Run one reconciliation cycle against GitHub and exit."""
    from autocoder_tracker.app import AppServices

    async def _reconcile() -> None:
        services = AppServices(get_config())
        await services.open()
        try:
            report = await services.reconciler.run_cycle()
        finally:
            await services.close()
        if report is None:
            click.echo("A reconciliation cycle is already running")
            return
        summary = ", ".join(f"{k.value}={v}" for k, v in sorted(report.outcomes.items()))
        click.echo(f"Checked {report.checked} work items{': ' + summary if summary else ''}")

    asyncio.run(_reconcile())


@main.command()
@click.option("--older-than-days", default=30, show_default=True, type=int)
def cleanup(older_than_days: int) -> None:
    """Remove completed and failed requests older than the cutoff."""
    from autocoder_tracker.app import AppServices

    async def _cleanup() -> int:
        services = AppServices(get_config())
        await services.open()
        try:
            return await services.store.cleanup(older_than_days)
        finally:
            await services.close()

    click.echo(f"Removed {asyncio.run(_cleanup())} work items")


@main.command()
def stats() -> None:
    """Print request counts per status."""
    from autocoder_tracker.app import AppServices

    async def _stats() -> dict:
        services = AppServices(get_config())
        await services.open()
        try:
            return services.store.stats().model_dump()
        finally:
            await services.close()

    click.echo(json.dumps(asyncio.run(_stats()), indent=2))


@main.command()
@click.argument("task")
@click.option("--language", default=None, help="Target language (default auto-detect).")
@click.option("--repository", default=None, help="GitHub repository as owner/name.")
@click.option(
    "--priority",
    type=click.Choice(["low", "medium", "high"]),
    default="medium",
    show_default=True,
)
def submit(task: str, language: str | None, repository: str | None, priority: str) -> None:
    """Record a new pending code request."""
    from autocoder_tracker.app import AppServices

    async def _submit() -> str:
        services = AppServices(get_config())
        await services.open()
        try:
            return await services.store.create(
                task,
                language=language,
                repository=repository or services.config.default_repo,
                priority=priority,
                requester="cli",
            )
        finally:
            await services.close()

    try:
        item_id = asyncio.run(_submit())
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc
    click.echo(json.dumps({"id": item_id, "status": "pending"}))


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"autocoder-tracker {__version__}")


if __name__ == "__main__":
    main()
