"""Prometheus metrics helpers for the funnel engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_ingest_rows_counter = Counter(
    "funnel_ingest_rows_total",
    "Rows processed by the ingestion pipeline by outcome.",
    ["source", "outcome"],
)
_stage_transition_counter = Counter(
    "funnel_stage_transitions_total",
    "Stage change attempts by trigger and outcome.",
    ["trigger", "outcome"],
)
_stage_conflict_counter = Counter(
    "funnel_stage_cas_conflicts_total",
    "Compare-and-swap conflicts hit while writing a participation stage.",
)
_segment_materialization_counter = Counter(
    "funnel_segment_materializations_total",
    "Rule-based segment materializations by trigger.",
    ["trigger"],
)
_segment_populate_duration = Histogram(
    "funnel_segment_populate_duration_seconds",
    "Duration of rule-based segment materialization in seconds.",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

IngestOutcome = Literal["created", "updated", "invalid", "failed"]


def record_ingest_rows(source: str, outcome: IngestOutcome, count: int = 1) -> None:
    """Increment the ingested-rows counter."""

    if count <= 0:
        return
    _ingest_rows_counter.labels(source=source, outcome=outcome).inc(count)


def record_stage_transition(trigger: str, outcome: str) -> None:
    """Count a stage change attempt (``outcome`` is ``moved`` or the skip reason)."""

    _stage_transition_counter.labels(trigger=trigger, outcome=outcome).inc()


def record_stage_conflict() -> None:
    _stage_conflict_counter.inc()


def record_segment_materialization(trigger: str, duration_seconds: float) -> None:
    """Capture a segment populate run."""

    _segment_materialization_counter.labels(trigger=trigger).inc()
    _segment_populate_duration.observe(max(duration_seconds, 0.0))
