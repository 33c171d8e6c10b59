"""
Funnel Celery tasks.

Every task runs inside the Flask application context (see
``FlaskContextTask``) and returns a JSON-serializable summary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from celery import shared_task
from flask import current_app

from funnel_app.errors import StageConflictError
from funnel_app.pipeline.ingest import IngestionContext, IngestionPipeline
from funnel_app.pipeline.progression import StageProgressionEngine
from funnel_app.pipeline.segments import SegmentMaterializer


@shared_task(name="funnel.healthcheck", bind=True)
def funnel_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask funnel worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="funnel.ingest.csv", bind=True)
def ingest_csv_file(
    self,
    *,
    file_path: str,
    context: dict[str, Any] | None = None,
    keep_file: bool = True,
) -> dict[str, Any]:
    """Run a queued CSV import and return the batch result."""

    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {file_path}")

    ingestion_context = IngestionContext.from_mapping(context, source="csv")
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            result = IngestionPipeline().ingest_csv(handle, ingestion_context)
    finally:
        if not keep_file:
            path.unlink(missing_ok=True)

    payload = result.as_dict()
    current_app.logger.info(
        "Queued CSV import completed",
        extra={
            "funnel_task_id": self.request.id,
            "funnel_file": str(path),
            "funnel_created": result.created,
            "funnel_updated": result.updated,
            "funnel_error_count": result.error_count,
        },
    )
    return payload


@shared_task(name="funnel.segments.refresh_stale", bind=True)
def refresh_stale_segments(self, *, threshold_minutes: float | None = None) -> dict[str, Any]:
    """Scheduled smart-list refresh."""

    refreshed = SegmentMaterializer().refresh_stale_smart_lists(threshold_minutes)
    if refreshed:
        current_app.logger.info("Refreshed %s stale smart lists", len(refreshed))
    return {"refreshed": refreshed, "count": len(refreshed)}


@shared_task(
    name="funnel.progression.advance_after_send",
    bind=True,
    autoretry_for=(StageConflictError,),
    retry_backoff=True,
    max_retries=3,
)
def advance_after_send_task(
    self,
    *,
    send_id: str | int,
    contact_ids: Iterable[int],
    event_id: int | None = None,
) -> dict[str, Any]:
    """Apply send-triggered stage progressions once a send completes."""

    result = StageProgressionEngine().advance_after_send(send_id, list(contact_ids), event_id=event_id)
    return result.as_dict()
