"""
Ingestion Pipeline.

Bulk imports (row lists or CSV files), intake-form submissions and manual
contact entry all flow through the same steps: map headers, validate,
resolve identity by email, then create or advance the participation when
the record carries funnel data.

Bulk runs never abort on a bad row. Validation failures and per-row
exceptions are collected as ``RowError`` entries while the remaining rows
proceed; each row is applied inside a savepoint and work is committed in
chunks. Only a store outage (``OperationalError``) stops the batch.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field as dataclass_field
from typing import IO, Callable, Iterable, Iterator, Mapping

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config.taxonomy import StageTaxonomy, get_taxonomy
from funnel_app.errors import (
    EventNotFoundError,
    FormInactiveError,
    FormNotFoundError,
    RecordValidationError,
)
from funnel_app.metrics import record_ingest_rows
from funnel_app.models import AudienceType, Contact, Event, IntakeForm, Participation, ResponseBag, Stage, db

from .canonicalize import (
    canonicalize,
    canonicalize_audience,
    infer_stage_from_responses,
    resolve_audience,
    resolve_stage,
)
from .field_mapper import (
    TARGET_CONTACT,
    TARGET_PARTICIPATION,
    TARGET_TYPES,
    carries_stage_data,
    map_record,
)
from .form_responses import build_response_bag, derive_party
from .identity import IdentityResolver
from .progression import StageProgressionEngine
from .validator import FIRST_DATA_LINE, RowError, validate_record

DEFAULT_CHUNK_SIZE = 200

_PARTICIPATION_FIELDS = ("attended", "amount_paid", "ticket_type", "party_size", "spouse_or_other")


@dataclass(frozen=True)
class IngestionContext:
    """Where an import lands: organization, optional event and audience, default stage."""

    organization_id: int | None = None
    event_id: int | None = None
    audience_type: AudienceType | None = None
    target_stage: Stage | None = None
    target_type: str = TARGET_CONTACT
    source: str = "api"

    @classmethod
    def from_mapping(cls, data: Mapping[str, object] | None, *, source: str = "api") -> "IngestionContext":
        """Build a context from request/CLI values (camelCase or snake_case keys)."""

        data = data or {}

        def pick(*keys: str) -> object | None:
            for key in keys:
                value = data.get(key)
                if value is not None and str(value).strip() != "":
                    return value
            return None

        def as_int(value: object | None, name: str) -> int | None:
            if value is None:
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                raise RecordValidationError(name, f"{name} must be an integer") from None

        raw_audience = pick("audienceType", "audience_type")
        audience = canonicalize_audience(raw_audience) if raw_audience is not None else None
        raw_stage = pick("targetStage", "target_stage", "stage")
        target_stage = canonicalize(raw_stage, audience) if raw_stage is not None else None
        target_type = str(pick("targetType", "target_type") or TARGET_CONTACT).strip().lower()
        if target_type not in TARGET_TYPES:
            raise RecordValidationError("targetType", f"Unknown target type {target_type}")
        return cls(
            organization_id=as_int(pick("organizationId", "organization_id"), "organizationId"),
            event_id=as_int(pick("eventId", "event_id"), "eventId"),
            audience_type=audience,
            target_stage=target_stage,
            target_type=target_type,
            source=source,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "organizationId": self.organization_id,
            "eventId": self.event_id,
            "audienceType": self.audience_type.value if self.audience_type else None,
            "targetStage": self.target_stage.value if self.target_stage else None,
            "targetType": self.target_type,
        }


@dataclass
class IngestionBatchResult:
    created: int = 0
    updated: int = 0
    valid_count: int = 0
    stages_advanced: int = 0
    rows_skipped_blank: int = 0
    errors: list[RowError] = dataclass_field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def as_dict(self) -> dict[str, object]:
        return {
            "created": self.created,
            "updated": self.updated,
            "validCount": self.valid_count,
            "errorCount": self.error_count,
            "errors": [error.as_dict() for error in self.errors],
            "stagesAdvanced": self.stages_advanced,
        }


@dataclass(frozen=True)
class RecordOutcome:
    contact_id: int
    created: bool
    changed_fields: tuple[str, ...] = ()
    participation_id: int | None = None
    stage: Stage | None = None
    stage_advanced: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "contactId": self.contact_id,
            "created": self.created,
            "changedFields": list(self.changed_fields),
            "participationId": self.participation_id,
            "stage": self.stage.value if self.stage else None,
        }


@dataclass
class PushResult:
    event_id: int
    created: int = 0
    advanced: int = 0
    skipped: int = 0
    missing: list[int] = dataclass_field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.advanced + self.skipped

    def as_dict(self) -> dict[str, object]:
        return {
            "eventId": self.event_id,
            "created": self.created,
            "advanced": self.advanced,
            "skipped": self.skipped,
            "missing": list(self.missing),
            "total": self.total,
        }


def _log(level: str, message: str, *args) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args)


def _chunk_size(chunk_size: int | None) -> int:
    if chunk_size is not None:
        return max(1, int(chunk_size))
    if has_app_context():
        return max(1, int(current_app.config.get("FUNNEL_INGEST_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)))
    return DEFAULT_CHUNK_SIZE


class IngestionPipeline:
    """Map → validate → resolve → progress, for batches and single records."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        taxonomy: StageTaxonomy | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self.session = session or db.session
        self.taxonomy = taxonomy or get_taxonomy()
        self.chunk_size = _chunk_size(chunk_size)
        self.resolver = IdentityResolver(self.session)
        self.progression = StageProgressionEngine(self.session, taxonomy=self.taxonomy)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _prepare_context(self, context: IngestionContext | None) -> IngestionContext:
        context = context or IngestionContext()
        if context.event_id is None:
            return context
        event = self.session.get(Event, context.event_id)
        if event is None:
            raise EventNotFoundError(context.event_id)
        if context.organization_id is None:
            context = dataclasses.replace(context, organization_id=event.organization_id)
        return context

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def ingest_rows(
        self,
        rows: Iterable[Mapping[str, object]],
        context: IngestionContext | None = None,
    ) -> IngestionBatchResult:
        """Ingest raw row dictionaries; row numbers start at the first data line of a CSV."""

        numbered = ((line, row) for line, row in enumerate(rows, start=FIRST_DATA_LINE))
        return self._ingest(numbered, self._prepare_context(context))

    def ingest_csv(self, stream: IO[str], context: IngestionContext | None = None) -> IngestionBatchResult:
        """Ingest a CSV text stream; error rows carry their line number in the file."""

        from funnel_app.adapters.csv_contacts import ContactCSVAdapter

        context = self._prepare_context(context)
        adapter = ContactCSVAdapter(stream, target_type=context.target_type)
        numbered = ((row.source_line, row.raw) for row in adapter.iter_rows())
        result = self._ingest(numbered, dataclasses.replace(context, source="csv"))
        result.rows_skipped_blank = adapter.statistics.rows_skipped_blank
        if adapter.header and adapter.header.unrecognized:
            _log("info", "CSV columns ignored: %s", ", ".join(adapter.header.unrecognized))
        return result

    def _ingest(self, numbered: Iterator[tuple[int, Mapping[str, object]]], context: IngestionContext) -> IngestionBatchResult:
        result = IngestionBatchResult()
        pending = 0
        for line, raw in numbered:
            mapped = map_record(raw, context.target_type)
            validation = validate_record(mapped)
            if not validation.is_valid:
                for error in validation.errors:
                    result.errors.append(RowError(line, error.field, error.message, dict(raw)))
                record_ingest_rows(context.source, "invalid")
                continue

            result.valid_count += 1
            try:
                with self.session.begin_nested():
                    outcome = self._apply(validation.cleaned, context)
            except OperationalError:
                raise
            except Exception as exc:  # noqa: BLE001 - one bad row must not sink the batch
                result.errors.append(RowError(line, None, str(exc), dict(raw)))
                record_ingest_rows(context.source, "failed")
                _log("warning", "Row %s failed to ingest: %s", line, exc)
                continue

            if outcome.created:
                result.created += 1
                record_ingest_rows(context.source, "created")
            else:
                result.updated += 1
                record_ingest_rows(context.source, "updated")
            if outcome.stage_advanced:
                result.stages_advanced += 1

            pending += 1
            if pending >= self.chunk_size:
                self.session.commit()
                pending = 0

        self.session.commit()
        _log(
            "info",
            "Ingested batch (%s): created=%s updated=%s errors=%s stages_advanced=%s",
            context.source,
            result.created,
            result.updated,
            result.error_count,
            result.stages_advanced,
        )
        return result

    # ------------------------------------------------------------------
    # Per-record steps
    # ------------------------------------------------------------------

    def _wants_participation(self, record: Mapping[str, object], context: IngestionContext) -> bool:
        return (
            context.target_type == TARGET_PARTICIPATION
            or context.event_id is not None
            or context.audience_type is not None
            or carries_stage_data(record, ("stage", "audience_type", "attended"))
        )

    def _candidate_stage(self, record: Mapping[str, object], context: IngestionContext, audience: AudienceType) -> Stage | None:
        raw_stage = record.get("stage")
        if raw_stage is not None and str(raw_stage).strip():
            return canonicalize(raw_stage, audience, taxonomy=self.taxonomy)
        if context.target_stage is not None:
            return canonicalize(context.target_stage, audience, taxonomy=self.taxonomy)
        if record.get("attended") is True:
            return canonicalize(Stage.ATTENDED, audience, taxonomy=self.taxonomy)
        return None

    def _find_participation(self, contact: Contact, event_id: int | None) -> Participation | None:
        stmt = select(Participation).where(Participation.contact_id == contact.id)
        if event_id is None:
            stmt = stmt.where(Participation.event_id.is_(None))
        else:
            stmt = stmt.where(Participation.event_id == event_id)
        return self.session.execute(stmt.order_by(Participation.id)).scalars().first()

    def _upsert_participation(
        self,
        contact: Contact,
        record: Mapping[str, object],
        context: IngestionContext,
        candidate_for: Callable[[AudienceType], Stage | None],
    ) -> tuple[Participation, Stage | None, bool]:
        """Create or update the participation; returns it, its stage and whether the stage advanced."""

        participation = self._find_participation(contact, context.event_id)
        if participation is None:
            audience = canonicalize_audience(
                record.get("audience_type"),
                default=context.audience_type or AudienceType(self.taxonomy.default_audience),
            )
            candidate = candidate_for(audience)
            stage = candidate or Stage(self.taxonomy.fallback_stage(audience.value))
            participation = Participation(
                contact_id=contact.id,
                event_id=context.event_id,
                audience_type=audience,
                current_stage=stage,
                version=1,
                responses=ResponseBag(),
            )
            for name in _PARTICIPATION_FIELDS:
                value = record.get(name)
                if value is not None:
                    setattr(participation, name, value)
            self.session.add(participation)
            self.session.flush()
            return participation, stage, stage.value != self.taxonomy.default_stage

        for name in _PARTICIPATION_FIELDS:
            value = record.get(name)
            if value is not None and value != "":
                setattr(participation, name, value)
        self.session.flush()

        candidate = candidate_for(participation.audience_type)
        if candidate is None:
            return participation, participation.current_stage, False
        change = self.progression.advance(participation.id, candidate, trigger="import", commit=False)
        return participation, change.current_stage, change.moved

    def _apply(self, record: Mapping[str, object], context: IngestionContext) -> RecordOutcome:
        resolution = self.resolver.resolve(record, organization_id=context.organization_id)
        if not self._wants_participation(record, context):
            return RecordOutcome(resolution.contact.id, resolution.created, resolution.changed_fields)

        participation, stage, advanced = self._upsert_participation(
            resolution.contact,
            record,
            context,
            lambda audience: self._candidate_stage(record, context, audience),
        )
        return RecordOutcome(
            contact_id=resolution.contact.id,
            created=resolution.created,
            changed_fields=resolution.changed_fields,
            participation_id=participation.id,
            stage=stage,
            stage_advanced=advanced,
        )

    # ------------------------------------------------------------------
    # Event push
    # ------------------------------------------------------------------

    def _push_targets(
        self,
        event: Event,
        contact_ids: Iterable[int] | None,
        tags: Iterable[str] | None,
        result: PushResult,
    ) -> list[int]:
        if contact_ids is not None:
            requested = list(dict.fromkeys(int(contact_id) for contact_id in contact_ids))
            found = set(
                self.session.execute(select(Contact.id).where(Contact.id.in_(requested))).scalars()
            ) if requested else set()
            result.missing = [contact_id for contact_id in requested if contact_id not in found]
            return [contact_id for contact_id in requested if contact_id in found]

        stmt = select(Contact.id, Contact.tags).where(Contact.organization_id == event.organization_id)
        wanted = {str(tag).strip().lower() for tag in (tags or []) if str(tag).strip()}
        targets = []
        for contact_id, contact_tags in self.session.execute(stmt.order_by(Contact.id)):
            if wanted and not wanted.intersection(str(tag).strip().lower() for tag in (contact_tags or [])):
                continue
            targets.append(contact_id)
        return targets

    def push_contacts(
        self,
        event_id: int,
        *,
        contact_ids: Iterable[int] | None = None,
        tags: Iterable[str] | None = None,
        audience_type: AudienceType | str | None = None,
        stage: Stage | str | None = None,
        source: str = "push",
    ) -> PushResult:
        """
        Push contacts into an event funnel.

        Targets are the given ``contact_ids``, else the event organization's
        contacts carrying any of ``tags``, else every contact of that
        organization. Contacts without a participation in the event get one
        at ``stage`` (or the audience's entry stage). Existing participations
        only ever advance to ``stage``; they are never moved backwards.
        """

        event = self.session.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        if audience_type is None or str(getattr(audience_type, "value", audience_type)).strip() == "":
            audience = AudienceType(self.taxonomy.default_audience)
        else:
            audience = resolve_audience(audience_type)
            if audience is None:
                raise RecordValidationError("audienceType", f"Unknown audience {audience_type!r}")

        target_stage = None
        if stage is not None and str(getattr(stage, "value", stage)).strip():
            target_stage = resolve_stage(stage, taxonomy=self.taxonomy)
            if target_stage is None:
                raise RecordValidationError("stage", f"Unknown stage {stage!r}")
            if not self.taxonomy.is_legal(target_stage.value, audience.value):
                raise RecordValidationError(
                    "stage", f"Stage {target_stage.value} is not used by the {audience.value} funnel"
                )

        result = PushResult(event_id=event_id)
        for contact_id in self._push_targets(event, contact_ids, tags, result):
            participation = self.session.execute(
                select(Participation)
                .where(Participation.contact_id == contact_id, Participation.event_id == event_id)
                .order_by(Participation.id)
            ).scalars().first()
            if participation is None:
                self.session.add(
                    Participation(
                        contact_id=contact_id,
                        event_id=event_id,
                        audience_type=audience,
                        current_stage=target_stage or Stage(self.taxonomy.fallback_stage(audience.value)),
                        version=1,
                        responses=ResponseBag(),
                    )
                )
                result.created += 1
                record_ingest_rows(source, "created")
                continue
            if target_stage is not None:
                change = self.progression.advance(participation.id, target_stage, trigger=source, commit=False)
                if change.moved:
                    result.advanced += 1
                    record_ingest_rows(source, "updated")
                    continue
            result.skipped += 1

        self.session.commit()
        _log(
            "info",
            "Pushed contacts into event %s: created=%s advanced=%s skipped=%s missing=%s",
            event_id,
            result.created,
            result.advanced,
            result.skipped,
            len(result.missing),
        )
        return result

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    @staticmethod
    def _validated(data: Mapping[str, object], target_type: str) -> dict[str, object | None]:
        mapped = map_record(data, target_type)
        validation = validate_record(mapped)
        if not validation.is_valid:
            first = validation.errors[0]
            raise RecordValidationError(first.field, first.message)
        return validation.cleaned

    def create_contact(self, data: Mapping[str, object], context: IngestionContext | None = None) -> RecordOutcome:
        """Manual entry: the single-record pipeline without a form."""

        context = self._prepare_context(context)
        record = self._validated(data, context.target_type)
        outcome = self._apply(record, dataclasses.replace(context, source="manual"))
        self.session.commit()
        record_ingest_rows("manual", "created" if outcome.created else "updated")
        _log("info", "Manual entry resolved contact %s (created=%s)", outcome.contact_id, outcome.created)
        return outcome

    def submit_form(self, slug: str, data: Mapping[str, object]) -> dict[str, object]:
        """
        Accept one intake-form submission.

        The stage is the form's target stage when it has one and is
        otherwise inferred from the answers. Existing participations only
        move forward; unmodelled answers are merged into the
        participation's response bag.
        """

        form = self.session.execute(select(IntakeForm).where(IntakeForm.slug == slug)).scalar_one_or_none()
        if form is None:
            raise FormNotFoundError(slug)
        if not form.is_active:
            raise FormInactiveError(slug)

        record = self._validated(data, TARGET_PARTICIPATION)
        # a resubmission without the party questions keeps the stored answers
        if record.get("spouse_or_other") is not None or record.get("party_size") is not None:
            record["spouse_or_other"], record["party_size"] = derive_party(record)
        responses = build_response_bag(data, TARGET_PARTICIPATION)
        requested_stage = form.target_stage or infer_stage_from_responses(data)

        context = IngestionContext(
            organization_id=form.organization_id,
            event_id=form.event_id,
            audience_type=form.audience_type,
            target_stage=requested_stage,
            target_type=TARGET_PARTICIPATION,
            source="form",
        )
        resolution = self.resolver.resolve(record, organization_id=form.organization_id)
        record.pop("stage", None)
        participation, stage, _ = self._upsert_participation(
            resolution.contact,
            record,
            context,
            lambda audience: canonicalize(requested_stage, audience, taxonomy=self.taxonomy),
        )
        participation.responses = participation.responses.merged(responses)
        form.submission_count = (form.submission_count or 0) + 1
        self.session.commit()

        record_ingest_rows("form", "created" if resolution.created else "updated")
        _log("info", "Form %s submission for contact %s at stage %s", slug, resolution.contact.id, stage.value)
        return {
            "contactId": resolution.contact.id,
            "participationId": participation.id,
            "stage": stage.value,
            "created": resolution.created,
        }


def ingest_rows(rows: Iterable[Mapping[str, object]], context: IngestionContext | None = None) -> IngestionBatchResult:
    return IngestionPipeline().ingest_rows(rows, context)


def ingest_csv(stream: IO[str], context: IngestionContext | None = None) -> IngestionBatchResult:
    return IngestionPipeline().ingest_csv(stream, context)


def submit_form(slug: str, data: Mapping[str, object]) -> dict[str, object]:
    return IngestionPipeline().submit_form(slug, data)


def create_contact(data: Mapping[str, object], context: IngestionContext | None = None) -> RecordOutcome:
    return IngestionPipeline().create_contact(data, context)


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "IngestionBatchResult",
    "IngestionContext",
    "IngestionPipeline",
    "PushResult",
    "RecordOutcome",
    "create_contact",
    "ingest_csv",
    "ingest_rows",
    "submit_form",
]
