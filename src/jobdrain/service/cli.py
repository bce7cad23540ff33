"""Command-line interface for draining and inspecting queues."""

from __future__ import annotations

import logging

import typer

from jobdrain.exceptions import QueueError
from jobdrain.logging import configure_logging
from jobdrain.service.config import settings
from jobdrain.service.container import get_queue_system

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="jobdrain",
    help="Drain and inspect jobdrain queues",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    configure_logging("DEBUG" if verbose else settings.log_level)


@app.command()
def run(
    queue: str = typer.Option("default", "--queue", "-q", help="Queue to drain"),
    batch_size: int | None = typer.Option(
        None, "--batch-size", "-b", min=1, help="Jobs to pop (defaults to the queue's batch_size)"
    ),
) -> None:
    """Run one batch of queued jobs in this process."""
    system = get_queue_system()
    try:
        with system.lifecycle.unit_of_work():
            if batch_size is None:
                succeeded = system.scheduler.run(queue)
            else:
                succeeded = system.worker.run(batch_size, queue)
    except QueueError as exc:
        typer.secho(f"Run failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"Processed {succeeded} job(s) from {queue}")


@app.command()
def schedule(
    queues: list[str] | None = typer.Argument(None, help="Queues to schedule"),
) -> None:
    """Register drain triggers sized to each queue's backlog."""
    system = get_queue_system()
    for queue in queues or settings.queue_names:
        added = system.scheduler.schedule_next_run(queue)
        count = system.scheduler.scheduled_count(queue)
        typer.echo(f"{queue}: {'scheduled' if added else 'unchanged'} ({count} batch(es) pending)")


@app.command()
def status(
    queues: list[str] | None = typer.Argument(None, help="Queues to report"),
) -> None:
    """Show backlog size and registered triggers per queue."""
    system = get_queue_system()
    try:
        provider = system.manager.get_provider()
        for queue in queues or settings.queue_names:
            pending = provider.pending_count(queue)
            scheduled = system.scheduler.scheduled_count(queue)
            typer.echo(f"{queue}: pending={pending} scheduled={scheduled}")
    except QueueError as exc:
        typer.secho(f"Status failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc


@app.command()
def migrate() -> None:
    """Apply database migrations for the queue table."""
    from jobdrain.service.db_migrations import run_queue_migrations

    run_queue_migrations()
    typer.echo("Migrations applied")


if __name__ == "__main__":
    app()
