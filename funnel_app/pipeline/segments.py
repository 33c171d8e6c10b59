"""
Segment / Smart List Materializer.

Rule-based segments are materialized caches: ``populate`` clears every
pointer at the segment and re-points the contacts matching its predicate.
Manual segments hold explicit member rows and are never recomputed.
Smart lists are rule-based segments refreshed lazily on read (when stale)
and periodically by the worker.
"""

from __future__ import annotations

import threading
import time
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.orm import Session

from config.taxonomy import StageTaxonomy, get_taxonomy
from funnel_app.errors import (
    EventNotFoundError,
    OrganizationNotFoundError,
    RecordValidationError,
    SegmentNotFoundError,
    SegmentTypeError,
)
from funnel_app.metrics import record_segment_materialization
from funnel_app.models import (
    AudienceType,
    Contact,
    Event,
    Organization,
    Participation,
    Segment,
    SegmentMember,
    SegmentScope,
    SegmentType,
    Stage,
    db,
)

from .canonicalize import resolve_audience, resolve_stage
from .validator import coerce_bool, coerce_list

DEFAULT_STALE_MINUTES = 5

# segment column -> accepted request keys
_FIELD_KEYS: Mapping[str, tuple[str, ...]] = {
    "name": ("name",),
    "description": ("description",),
    "event_id": ("eventId", "event_id"),
    "audience_type": ("audienceType", "audience_type"),
    "stages": ("stages",),
    "tags": ("tags",),
    "engagement_tiers": ("engagementTiers", "engagement_tiers"),
    "scope": ("scope",),
    "is_active": ("isActive", "is_active"),
}
PREDICATE_FIELDS = frozenset({"event_id", "audience_type", "stages", "tags", "engagement_tiers", "scope"})


@dataclass(frozen=True)
class SmartListTemplate:
    name: str
    description: str
    stages: tuple[str, ...] = ()
    audience_type: str | None = None
    scope: SegmentScope = SegmentScope.CONTACT


EVENT_SMART_LISTS: tuple[SmartListTemplate, ...] = (
    SmartListTemplate("All Stages", "Everyone in the event funnel."),
    SmartListTemplate("Paid RSVPs", "Contacts who have paid.", stages=("paid",)),
    SmartListTemplate("Soft Commits", "RSVPed but not yet paid.", stages=("rsvped",)),
    SmartListTemplate("Hot Leads", "Expressed interest in attending.", stages=("expressed_interest",)),
    SmartListTemplate(
        "In Funnel",
        "Early-funnel contacts still to be worked.",
        stages=("in_funnel", "general_awareness", "personal_invite"),
    ),
)

ORG_SMART_LISTS: tuple[SmartListTemplate, ...] = (
    SmartListTemplate("All Members", "Every organization member.", scope=SegmentScope.ORG_MEMBER),
    SmartListTemplate("Champions", "Contacts in the champions funnel.", audience_type="champions"),
)


@dataclass(frozen=True)
class PopulateResult:
    segment_id: int
    member_count: int
    materialized_at: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "segmentId": self.segment_id,
            "memberCount": self.member_count,
            "materializedAt": self.materialized_at.isoformat(),
        }


@dataclass(frozen=True)
class SegmentMembers:
    segment: Segment
    members: list[dict[str, object]]
    refreshed: bool

    def as_dict(self) -> dict[str, object]:
        return {"segment": self.segment.as_dict(), "members": self.members, "refreshed": self.refreshed}


_locks_guard = threading.Lock()
# an entry lives only while some thread holds or waits on the lock
_segment_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()


def _segment_lock(segment_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _segment_locks.get(segment_id)
        if lock is None:
            lock = threading.Lock()
            _segment_locks[segment_id] = lock
        return lock


def _stage_values(values: Iterable[str] | None) -> list[Stage]:
    official = {stage.value: stage for stage in Stage}
    return [official[value] for value in (values or []) if value in official]


def _parse_field(column: str, key: str, value: object | None) -> object | None:
    if column == "name":
        name = str(value).strip() if value is not None else ""
        if not name:
            raise RecordValidationError(key, "Missing name")
        return name
    if column == "description":
        if value is None:
            return None
        return str(value).strip() or None
    if isinstance(value, str):
        blank = not value.strip()
    elif isinstance(value, (list, tuple)):
        blank = not value
    else:
        blank = value is None
    if blank:
        if column in ("stages", "tags", "engagement_tiers"):
            return []
        if column == "scope":
            return SegmentScope.CONTACT
        if column == "is_active":
            raise RecordValidationError(key, f"{key} must be true or false")
        return None

    if column == "event_id":
        try:
            return int(value)
        except (TypeError, ValueError):
            raise RecordValidationError(key, f"{key} must be an integer") from None
    if column == "audience_type":
        audience = resolve_audience(value)
        if audience is None:
            raise RecordValidationError(key, f"Unknown audience {value!r}")
        return audience
    if column == "stages":
        items = coerce_list(value)
        if items is None:
            raise RecordValidationError(key, f"{key} must be a list of stages")
        stages: list[str] = []
        for item in items:
            stage = resolve_stage(item)
            if stage is None:
                raise RecordValidationError(key, f"Unknown stage {item!r}")
            if stage.value not in stages:
                stages.append(stage.value)
        return stages
    if column in ("tags", "engagement_tiers"):
        items = coerce_list(value)
        if items is None:
            raise RecordValidationError(key, f"{key} must be a list of strings")
        return items
    if column == "scope":
        try:
            return SegmentScope(str(value).strip().lower())
        except ValueError:
            raise RecordValidationError(key, f"Unknown scope {value!r}") from None
    flag = coerce_bool(value)
    if flag is None:
        raise RecordValidationError(key, f"{key} must be true or false")
    return flag


def segment_fields(data: Mapping[str, object]) -> dict[str, object | None]:
    """
    Validated segment column values for the keys present in ``data``.

    Operator-written filters are resolved strictly: an unknown audience,
    stage or scope raises ``RecordValidationError`` instead of silently
    widening or narrowing the segment.
    """

    fields: dict[str, object | None] = {}
    for column, keys in _FIELD_KEYS.items():
        for key in keys:
            if key in data:
                fields[column] = _parse_field(column, key, data[key])
                break
    return fields


def _stale_threshold(threshold_minutes: float | None) -> float:
    if threshold_minutes is not None:
        return float(threshold_minutes)
    if has_app_context():
        return float(current_app.config.get("FUNNEL_STALE_THRESHOLD_MINUTES", DEFAULT_STALE_MINUTES))
    return float(DEFAULT_STALE_MINUTES)


def is_stale(segment: Segment, threshold_minutes: float | None = None, *, now: datetime | None = None) -> bool:
    """A smart list is stale when never materialized or older than the threshold."""

    if not segment.is_smart_list:
        return False
    age = segment.minutes_since_materialized(now)
    if age is None:
        return True
    return age > _stale_threshold(threshold_minutes)


class SegmentMaterializer:
    """Populate, read and curate segments."""

    def __init__(self, session: Session | None = None, *, taxonomy: StageTaxonomy | None = None):
        self.session = session or db.session
        self.taxonomy = taxonomy or get_taxonomy()

    # ------------------------------------------------------------------
    # Predicate evaluation
    # ------------------------------------------------------------------

    def _participation_clause(self, segment: Segment):
        stages = _stage_values(segment.stages)
        needs_participation = bool(
            segment.event_id or segment.audience_type or stages or segment.scope == SegmentScope.EVENT_ATTENDEE
        )
        if not needs_participation:
            return None

        conditions = [Participation.contact_id == Contact.id]
        if segment.event_id:
            conditions.append(Participation.event_id == segment.event_id)
        else:
            org_events = select(Event.id).where(Event.organization_id == segment.organization_id)
            conditions.append(or_(Participation.event_id.in_(org_events), Participation.event_id.is_(None)))
        if segment.audience_type:
            conditions.append(Participation.audience_type == segment.audience_type)
        if stages:
            conditions.append(Participation.current_stage.in_(stages))
        if segment.scope == SegmentScope.EVENT_ATTENDEE:
            conditions.append(
                or_(
                    Participation.attended.is_(True),
                    Participation.current_stage.in_([Stage.ATTENDED, Stage.FOLLOWED_UP]),
                )
            )
        return exists().where(and_(*conditions))

    def matching_contact_ids(self, segment: Segment) -> list[int]:
        """Ids of the contacts satisfying ``segment``'s predicate, ordered by id."""

        stmt = select(Contact.id, Contact.tags)
        participation_clause = self._participation_clause(segment)
        if not segment.event_id:
            stmt = stmt.where(Contact.organization_id == segment.organization_id)
        if participation_clause is not None:
            stmt = stmt.where(participation_clause)

        if segment.scope == SegmentScope.ORG_MEMBER:
            stmt = stmt.where(Contact.is_org_member.is_(True))
        if segment.engagement_tiers:
            stmt = stmt.where(Contact.engagement_tier.in_(list(segment.engagement_tiers)))

        wanted_tags = {str(tag).strip().lower() for tag in (segment.tags or []) if str(tag).strip()}
        matched: list[int] = []
        for contact_id, tags in self.session.execute(stmt.order_by(Contact.id)):
            if wanted_tags and not wanted_tags.intersection(str(tag).strip().lower() for tag in (tags or [])):
                continue
            matched.append(contact_id)
        return matched

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def _load(self, segment_id: int, *, for_update: bool = False) -> Segment:
        stmt = select(Segment).where(Segment.id == segment_id)
        if for_update:
            stmt = stmt.with_for_update()
        segment = self.session.execute(stmt).scalar_one_or_none()
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        return segment

    def populate(self, segment_id: int, *, trigger: str = "manual", commit: bool = True) -> PopulateResult:
        """
        Recompute a rule-based segment.

        Serialized per segment: a process-local lock plus a row lock on the
        segment (where the database supports it) so two refreshes cannot
        interleave their clear and assign steps.
        """

        started = time.perf_counter()
        with _segment_lock(segment_id):
            segment = self._load(segment_id, for_update=True)
            if segment.is_manual:
                raise SegmentTypeError(f"Segment {segment_id} is manual and cannot be populated")

            matched = self.matching_contact_ids(segment)
            self.session.execute(
                update(Contact)
                .where(Contact.segment_id == segment.id)
                .values(segment_id=None)
                .execution_options(synchronize_session=False)
            )
            if matched:
                self.session.execute(
                    update(Contact)
                    .where(Contact.id.in_(matched))
                    .values(segment_id=segment.id)
                    .execution_options(synchronize_session=False)
                )

            materialized_at = datetime.now(timezone.utc)
            segment.member_count = len(matched)
            segment.last_materialized_at = materialized_at
            if commit:
                self.session.commit()
            else:
                self.session.flush()
            # pointers were rewritten behind the identity map
            self.session.expire_all()

        record_segment_materialization(trigger, time.perf_counter() - started)
        if has_app_context():
            current_app.logger.info("Populated segment %s with %s members (%s)", segment_id, len(matched), trigger)
        return PopulateResult(segment_id=segment_id, member_count=len(matched), materialized_at=materialized_at)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_members(
        self,
        segment_id: int,
        *,
        auto_refresh: bool = True,
        threshold_minutes: float | None = None,
    ) -> SegmentMembers:
        """Return member projections; stale smart lists are repopulated first."""

        segment = self._load(segment_id)
        refreshed = False
        if not segment.is_manual and auto_refresh and is_stale(segment, threshold_minutes):
            self.populate(segment_id, trigger="read")
            segment = self._load(segment_id)
            refreshed = True

        if segment.is_manual:
            stmt = select(Contact).join(SegmentMember, SegmentMember.contact_id == Contact.id).where(
                SegmentMember.segment_id == segment.id
            )
        else:
            stmt = select(Contact).where(Contact.segment_id == segment.id)
        contacts = self.session.execute(stmt.order_by(Contact.last_name, Contact.first_name, Contact.id)).scalars()
        members = [contact.to_projection() for contact in contacts]

        segment.usage_count = (segment.usage_count or 0) + 1
        segment.last_used_at = datetime.now(timezone.utc)
        self.session.commit()
        return SegmentMembers(segment=segment, members=members, refreshed=refreshed)

    def preview(
        self,
        organization_id: int,
        *,
        event_id: int | None = None,
        audience_type: AudienceType | None = None,
        stages: Sequence[str] = (),
        tags: Sequence[str] = (),
        engagement_tiers: Sequence[str] = (),
        scope: SegmentScope = SegmentScope.CONTACT,
        sample_size: int = 10,
    ) -> dict[str, object]:
        """Evaluate criteria without saving a segment."""

        draft = Segment(
            organization_id=organization_id,
            event_id=event_id,
            audience_type=audience_type,
            stages=list(stages),
            tags=list(tags),
            engagement_tiers=list(engagement_tiers),
            scope=scope,
        )
        matched = self.matching_contact_ids(draft)
        sample: list[dict[str, object]] = []
        if matched:
            contacts = self.session.execute(
                select(Contact).where(Contact.id.in_(matched[:sample_size])).order_by(Contact.last_name, Contact.first_name)
            ).scalars()
            sample = [contact.to_projection() for contact in contacts]
        return {"count": len(matched), "sample": sample}

    def segment_stats(self, segment_id: int) -> dict[str, object]:
        """Member count plus a stage breakdown of the members' participations."""

        segment = self._load(segment_id)
        if segment.is_manual:
            member_ids = select(SegmentMember.contact_id).where(SegmentMember.segment_id == segment.id)
        else:
            member_ids = select(Contact.id).where(Contact.segment_id == segment.id)

        member_count = self.session.execute(
            select(func.count()).select_from(member_ids.subquery())
        ).scalar_one()
        org_members = self.session.execute(
            select(func.count(Contact.id)).where(Contact.id.in_(member_ids), Contact.is_org_member.is_(True))
        ).scalar_one()

        stage_stmt = (
            select(Participation.current_stage, func.count(Participation.id))
            .where(Participation.contact_id.in_(member_ids))
            .group_by(Participation.current_stage)
        )
        if segment.event_id:
            stage_stmt = stage_stmt.where(Participation.event_id == segment.event_id)
        stage_counts = {stage.value: count for stage, count in self.session.execute(stage_stmt)}

        return {
            "segmentId": segment.id,
            "memberCount": member_count,
            "orgMembers": org_members,
            "stageCounts": {
                stage.value: stage_counts[stage.value]
                for stage in self.taxonomy.stages
                if stage.value in stage_counts
            },
            "usageCount": segment.usage_count,
            "lastUsedAt": segment.last_used_at.isoformat() if segment.last_used_at else None,
            "lastMaterializedAt": segment.last_materialized_at.isoformat() if segment.last_materialized_at else None,
            "isStale": is_stale(segment),
        }

    def pipeline_registry(self, event_id: int, audience_type: AudienceType | None = None) -> dict[str, object]:
        """
        Per-stage participation counts for an event funnel.

        With an audience, only that audience's legal stages are listed (in
        funnel order, zero counts included); otherwise every official stage.
        """

        if self.session.get(Event, event_id) is None:
            raise EventNotFoundError(event_id)
        stmt = (
            select(Participation.current_stage, func.count(Participation.id))
            .where(Participation.event_id == event_id)
            .group_by(Participation.current_stage)
        )
        if audience_type is not None:
            stmt = stmt.where(Participation.audience_type == audience_type)
            listed = self.taxonomy.legal_stages(audience_type.value)
        else:
            listed = self.taxonomy.stage_values()
        counts = {stage.value: count for stage, count in self.session.execute(stmt)}
        labels = {stage.value: stage.label for stage in self.taxonomy.stages}
        return {
            "eventId": event_id,
            "audienceType": audience_type.value if audience_type else None,
            "total": sum(counts.values()),
            "stages": [
                {"stage": value, "label": labels.get(value, value), "count": counts.get(value, 0)}
                for value in listed
            ],
        }

    # ------------------------------------------------------------------
    # Segment lifecycle
    # ------------------------------------------------------------------

    def list_segments(self, organization_id: int, *, include_inactive: bool = False) -> list[Segment]:
        stmt = select(Segment).where(Segment.organization_id == organization_id)
        if not include_inactive:
            stmt = stmt.where(Segment.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(Segment.name, Segment.id)).scalars())

    def _check_name(self, organization_id: int, name: str, *, exclude_id: int | None = None) -> None:
        stmt = select(Segment.id).where(Segment.organization_id == organization_id, Segment.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Segment.id != exclude_id)
        if self.session.execute(stmt).first() is not None:
            raise RecordValidationError("name", f"A segment named {name!r} already exists")

    def _check_event(self, organization_id: int, event_id: int | None) -> None:
        if event_id is None:
            return
        event = self.session.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if event.organization_id != organization_id:
            raise RecordValidationError("eventId", f"Event {event_id} belongs to another organization")

    def create_segment(
        self,
        organization_id: int,
        data: Mapping[str, object],
        *,
        contact_ids: Iterable[int] | None = None,
    ) -> Segment:
        """
        Create a segment from request-style fields.

        Rule-based segments are populated immediately; manual segments start
        with ``contact_ids`` (if given) as their members.
        """

        if self.session.get(Organization, organization_id) is None:
            raise OrganizationNotFoundError(organization_id)
        fields = segment_fields(data)
        if "name" not in fields:
            raise RecordValidationError("name", "Missing name")

        raw_type = data.get("segmentType", data.get("segment_type")) or SegmentType.RULE.value
        try:
            segment_type = SegmentType(str(raw_type).strip().lower())
        except ValueError:
            raise RecordValidationError("segmentType", f"Unknown segment type {raw_type!r}") from None
        is_smart_list = bool(coerce_bool(data.get("isSmartList", data.get("is_smart_list"))))
        if segment_type == SegmentType.MANUAL and is_smart_list:
            raise RecordValidationError("isSmartList", "Manual segments cannot be smart lists")

        self._check_name(organization_id, fields["name"])
        self._check_event(organization_id, fields.get("event_id"))

        segment = Segment(
            organization_id=organization_id,
            segment_type=segment_type,
            is_smart_list=is_smart_list,
            scope=SegmentScope.CONTACT,
            stages=[],
            tags=[],
            engagement_tiers=[],
        )
        for column, value in fields.items():
            setattr(segment, column, value)
        self.session.add(segment)
        self.session.commit()
        segment_id = segment.id
        if has_app_context():
            current_app.logger.info("Created %s segment %s (%s)", segment_type.value, segment_id, segment.name)

        if segment_type == SegmentType.RULE:
            self.populate(segment_id, trigger="create")
        elif contact_ids is not None:
            self.assign(segment_id, contact_ids)
        return self._load(segment_id)

    def update_segment(self, segment_id: int, data: Mapping[str, object]) -> Segment:
        """Apply the fields present in ``data``; a changed predicate repopulates the segment."""

        segment = self._load(segment_id)
        raw_type = data.get("segmentType", data.get("segment_type"))
        if raw_type is not None and str(raw_type).strip().lower() != segment.segment_type.value:
            raise SegmentTypeError(f"Segment {segment_id} cannot change type")
        fields = segment_fields(data)
        if "name" in fields:
            self._check_name(segment.organization_id, fields["name"], exclude_id=segment.id)
        if "event_id" in fields:
            self._check_event(segment.organization_id, fields["event_id"])

        predicate_changed = any(
            getattr(segment, column) != value for column, value in fields.items() if column in PREDICATE_FIELDS
        )
        for column, value in fields.items():
            setattr(segment, column, value)
        self.session.commit()

        if predicate_changed and not segment.is_manual and segment.is_active:
            self.populate(segment_id, trigger="update")
        return self._load(segment_id)

    def delete_segment(self, segment_id: int) -> dict[str, object]:
        """Delete a segment; contacts pointing at it are unassigned, manual member rows removed."""

        with _segment_lock(segment_id):
            segment = self._load(segment_id, for_update=True)
            unassigned = self.session.execute(
                update(Contact)
                .where(Contact.segment_id == segment.id)
                .values(segment_id=None)
                .execution_options(synchronize_session=False)
            ).rowcount or 0
            self.session.delete(segment)
            self.session.commit()
            self.session.expire_all()

        if has_app_context():
            current_app.logger.info("Deleted segment %s (%s contacts unassigned)", segment_id, unassigned)
        return {"segmentId": segment_id, "deleted": True, "unassigned": unassigned}

    # ------------------------------------------------------------------
    # Manual curation
    # ------------------------------------------------------------------

    def assign(self, segment_id: int, contact_ids: Iterable[int], *, commit: bool = True) -> dict[str, object]:
        """Add contacts to a manual segment; unknown ids are reported, not fatal."""

        segment = self._load(segment_id)
        if not segment.is_manual:
            raise SegmentTypeError(f"Segment {segment_id} is rule-based; membership is computed")

        requested = list(dict.fromkeys(int(contact_id) for contact_id in contact_ids))
        existing_contacts = set(
            self.session.execute(select(Contact.id).where(Contact.id.in_(requested))).scalars()
        ) if requested else set()
        already = set(
            self.session.execute(
                select(SegmentMember.contact_id).where(SegmentMember.segment_id == segment.id)
            ).scalars()
        )

        added = 0
        for contact_id in requested:
            if contact_id in existing_contacts and contact_id not in already:
                self.session.add(SegmentMember(segment_id=segment.id, contact_id=contact_id))
                already.add(contact_id)
                added += 1

        segment.member_count = len(already)
        segment.last_materialized_at = datetime.now(timezone.utc)
        if commit:
            self.session.commit()
        return {
            "added": added,
            "memberCount": segment.member_count,
            "missing": [contact_id for contact_id in requested if contact_id not in existing_contacts],
        }

    # ------------------------------------------------------------------
    # Smart lists
    # ------------------------------------------------------------------

    def _ensure_smart_list(self, organization_id: int, name: str, template: SmartListTemplate, event_id=None) -> Segment:
        segment = self.session.execute(
            select(Segment).where(Segment.organization_id == organization_id, Segment.name == name)
        ).scalar_one_or_none()
        if segment is not None:
            return segment
        segment = Segment(
            organization_id=organization_id,
            name=name,
            description=template.description,
            segment_type=SegmentType.RULE,
            scope=template.scope,
            event_id=event_id,
            audience_type=AudienceType(template.audience_type) if template.audience_type else None,
            stages=list(template.stages),
            tags=[],
            engagement_tiers=[],
            is_smart_list=True,
        )
        self.session.add(segment)
        self.session.flush()
        return segment

    def create_event_smart_lists(self, event_id: int) -> list[Segment]:
        """Create (idempotently) and populate the standard smart lists for an event."""

        event = self.session.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        segments = [
            self._ensure_smart_list(event.organization_id, f"{event.title}: {template.name}", template, event.id)
            for template in EVENT_SMART_LISTS
        ]
        self.session.commit()
        segment_ids = [segment.id for segment in segments]
        for segment_id in segment_ids:
            self.populate(segment_id, trigger="create")
        return [self._load(segment_id) for segment_id in segment_ids]

    def create_org_smart_lists(self, organization_id: int) -> list[Segment]:
        if self.session.get(Organization, organization_id) is None:
            raise OrganizationNotFoundError(organization_id)
        segments = [
            self._ensure_smart_list(organization_id, template.name, template) for template in ORG_SMART_LISTS
        ]
        self.session.commit()
        segment_ids = [segment.id for segment in segments]
        for segment_id in segment_ids:
            self.populate(segment_id, trigger="create")
        return [self._load(segment_id) for segment_id in segment_ids]

    def refresh_event_smart_lists(self, event_id: int) -> list[int]:
        """Repopulate every smart list attached to ``event_id``."""

        segment_ids = list(
            self.session.execute(
                select(Segment.id).where(
                    Segment.event_id == event_id,
                    Segment.is_smart_list.is_(True),
                    Segment.segment_type == SegmentType.RULE,
                )
            ).scalars()
        )
        for segment_id in segment_ids:
            self.populate(segment_id, trigger="event")
        return segment_ids

    def refresh_stale_smart_lists(self, threshold_minutes: float | None = None) -> list[int]:
        """Repopulate every active smart list past the staleness threshold."""

        now = datetime.now(timezone.utc)
        candidates = self.session.execute(
            select(Segment).where(
                Segment.is_smart_list.is_(True),
                Segment.is_active.is_(True),
                Segment.segment_type == SegmentType.RULE,
            )
        ).scalars()
        stale_ids = [segment.id for segment in candidates if is_stale(segment, threshold_minutes, now=now)]
        for segment_id in stale_ids:
            self.populate(segment_id, trigger="scheduled")
        return stale_ids


__all__ = [
    "DEFAULT_STALE_MINUTES",
    "EVENT_SMART_LISTS",
    "ORG_SMART_LISTS",
    "PREDICATE_FIELDS",
    "PopulateResult",
    "SegmentMaterializer",
    "SegmentMembers",
    "SmartListTemplate",
    "is_stale",
    "segment_fields",
]
