"""
``flask funnel`` management commands.

Imports run inline by default; ``--queue`` hands the file to the worker.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import AppGroup

from config.taxonomy import get_taxonomy
from funnel_app.celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from funnel_app.errors import FunnelError
from funnel_app.pipeline.field_mapper import TARGET_CONTACT, TARGET_TYPES
from funnel_app.pipeline.ingest import IngestionContext, IngestionPipeline
from funnel_app.pipeline.progression import StageProgressionEngine
from funnel_app.pipeline.segments import SegmentMaterializer

funnel_cli = AppGroup("funnel", help="Contact funnel management commands.")


def _resolve_celery(app) -> Optional[Celery]:
    """Retrieve the registered Celery instance, raising a helpful error if missing."""
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Funnel Celery app is unavailable. Ensure the funnel extension initialises before running worker commands."
        )
    return celery_app


@funnel_cli.command("import-csv")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="CSV file to import.",
)
@click.option("--organization-id", type=int, help="Organization the contacts belong to.")
@click.option("--event-id", type=int, help="Event whose funnel the rows feed.")
@click.option("--audience", help="Audience type for created participations.")
@click.option("--stage", help="Default stage for rows without a stage column.")
@click.option(
    "--target-type",
    type=click.Choice(TARGET_TYPES),
    default=TARGET_CONTACT,
    show_default=True,
)
@click.option("--queue", "queue_it", is_flag=True, help="Hand the import to the background worker.")
def import_csv(
    file_path: Path,
    organization_id: Optional[int],
    event_id: Optional[int],
    audience: Optional[str],
    stage: Optional[str],
    target_type: str,
    queue_it: bool,
):
    """Import contacts from a CSV export."""
    context_values = {
        "organizationId": organization_id,
        "eventId": event_id,
        "audienceType": audience,
        "targetStage": stage,
        "targetType": target_type,
    }
    csv_path = file_path.resolve()

    if queue_it:
        celery_app = _resolve_celery(current_app)
        try:
            async_result = celery_app.send_task(
                "funnel.ingest.csv",
                kwargs={"file_path": str(csv_path), "context": context_values, "keep_file": True},
            )
        except Exception as exc:  # pragma: no cover - broker failures
            raise click.ClickException(f"Failed to enqueue import of {csv_path}: {exc}") from exc
        current_app.logger.info(
            "CSV import queued via CLI",
            extra={"funnel_task_id": async_result.id, "funnel_file": str(csv_path)},
        )
        click.echo(json.dumps({"status": "queued", "task_id": async_result.id, "file": str(csv_path)}))
        return

    try:
        context = IngestionContext.from_mapping(context_values, source="csv")
        with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
            result = IngestionPipeline().ingest_csv(handle, context)
    except FunnelError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.as_dict(), indent=2, default=str))


@funnel_cli.command("refresh-segments")
@click.option("--segment-id", type=int, help="Populate a single segment.")
@click.option("--event-id", type=int, help="Populate every smart list for an event.")
@click.option("--threshold", type=float, help="Staleness threshold in minutes (default from config).")
def refresh_segments(segment_id: Optional[int], event_id: Optional[int], threshold: Optional[float]):
    """Repopulate segments (stale smart lists when no target is given)."""
    materializer = SegmentMaterializer()
    try:
        if segment_id is not None:
            result = materializer.populate(segment_id, trigger="cli")
            payload = result.as_dict()
        elif event_id is not None:
            payload = {"refreshed": materializer.refresh_event_smart_lists(event_id)}
        else:
            payload = {"refreshed": materializer.refresh_stale_smart_lists(threshold)}
    except FunnelError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload))


@funnel_cli.command("bulk-move")
@click.option("--event-id", type=int, required=True)
@click.option("--from", "from_stage", required=True, help="Stage to move participations out of.")
@click.option("--to", "to_stage", required=True, help="Stage to move participations into.")
def bulk_move(event_id: int, from_stage: str, to_stage: str):
    """Move every participation of an event from one stage to another."""
    try:
        result = StageProgressionEngine().bulk_move(event_id, from_stage, to_stage)
    except FunnelError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.as_dict()))


@funnel_cli.command("taxonomy")
def show_taxonomy():
    """Print the active stage taxonomy as JSON."""
    click.echo(json.dumps(get_taxonomy().as_dict(), indent=2))


@funnel_cli.group(name="worker")
def worker_group():
    """Manage the funnel background worker."""
    if not current_app.config.get("FUNNEL_WORKER_ENABLED"):
        click.echo(
            "Warning: FUNNEL_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.option("--beat", is_flag=True, help="Embed the beat scheduler for periodic smart-list refresh.")
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    celery_app = _resolve_celery(current_app)
    state = current_app.extensions.get(EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting funnel worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
def worker_ping(timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    celery_app = _resolve_celery(current_app)
    task = celery_app.tasks.get("funnel.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'funnel.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
