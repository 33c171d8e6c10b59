"""
Stage Progression Engine.

All stage writes in the system go through ``StageProgressionEngine``. The
load-bearing rule is monotonic advance: a participation only moves to a
candidate stage that ranks above its current one, except that a contact
at ``cant_attend`` may re-enter the funnel anywhere. ``force`` and bulk
moves are the only ways backwards.

Each write is a compare-and-swap on ``Participation.version``: read the
current stage and version, decide, then ``UPDATE ... WHERE version = :read``.
A zero row count means another writer got there first; the decision is
re-made against fresh state, up to ``FUNNEL_STAGE_CAS_RETRIES`` times.
"""

from __future__ import annotations

from dataclasses import dataclass, field as dataclass_field
from typing import Callable, Iterable, Mapping

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config.taxonomy import StageTaxonomy, get_taxonomy
from funnel_app.errors import (
    ParticipationNotFoundError,
    PreconditionError,
    RecordValidationError,
    StageConflictError,
)
from funnel_app.metrics import record_stage_conflict, record_stage_transition
from funnel_app.models import AudienceType, Participation, Stage, db

from .canonicalize import canonicalize, resolve_stage

DEFAULT_MAX_ATTEMPTS = 3

REASON_ADVANCED = "advanced"
REASON_FORCED = "forced"
REASON_UNCHANGED = "unchanged"
REASON_NOT_FORWARD = "not_forward"
REASON_ILLEGAL = "illegal_for_audience"
REASON_NO_PROGRESSION = "no_progression"


@dataclass(frozen=True)
class StageChangeResult:
    participation_id: int
    previous_stage: Stage
    current_stage: Stage
    moved: bool
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {
            "participationId": self.participation_id,
            "previousStage": self.previous_stage.value,
            "currentStage": self.current_stage.value,
            "moved": self.moved,
            "reason": self.reason,
        }


@dataclass
class SendProgressionResult:
    send_id: str | int | None
    moved: int = 0
    skipped: int = 0
    total: int = 0
    changes: list[StageChangeResult] = dataclass_field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {"sendId": self.send_id, "moved": self.moved, "skipped": self.skipped, "total": self.total}


@dataclass(frozen=True)
class BulkMoveResult:
    event_id: int
    from_stage: Stage
    to_stage: Stage
    moved: int
    skipped: int = 0  # rows whose audience does not allow ``to_stage``

    def as_dict(self) -> dict[str, object]:
        return {
            "moved": self.moved,
            "skipped": self.skipped,
            "from": self.from_stage.value,
            "to": self.to_stage.value,
        }


Decision = Callable[[Stage, str], "tuple[Stage | None, str]"]


def _log_info(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.info(message, *args)


class StageProgressionEngine:
    """Stage writes with the monotonic invariant and optimistic concurrency."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        taxonomy: StageTaxonomy | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.session = session or db.session
        self.taxonomy = taxonomy or get_taxonomy()
        if max_attempts is None:
            max_attempts = (
                current_app.config.get("FUNNEL_STAGE_CAS_RETRIES", DEFAULT_MAX_ATTEMPTS)
                if has_app_context()
                else DEFAULT_MAX_ATTEMPTS
            )
        self.max_attempts = max(1, int(max_attempts))

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def rank(self, stage: Stage | str) -> float | None:
        """Funnel position of ``stage``; ``None`` for stages outside the order."""

        value = stage.value if isinstance(stage, Stage) else str(stage)
        return self.taxonomy.rank(value)

    def is_forward(self, current: Stage, candidate: Stage) -> bool:
        """
        Whether moving ``current`` → ``candidate`` is forward progress.

        ``cant_attend`` is re-enterable from anywhere before attendance and
        may be left for any stage.
        """

        if candidate == current:
            return False
        if current == Stage.CANT_ATTEND:
            return True
        current_rank = self.rank(current)
        if candidate == Stage.CANT_ATTEND:
            return current_rank is not None and current_rank < self.rank(Stage.ATTENDED)
        candidate_rank = self.rank(candidate)
        if current_rank is None or candidate_rank is None:
            return False
        return candidate_rank > current_rank

    def progression_map(self) -> dict[str, str]:
        """Send-triggered progressions keyed by current stage."""

        return dict(self.taxonomy.send_progressions)

    # ------------------------------------------------------------------
    # Compare-and-swap core
    # ------------------------------------------------------------------

    def _coerce_candidate(self, candidate: Stage | str, audience: str) -> Stage:
        if isinstance(candidate, Stage):
            return candidate
        return canonicalize(candidate, audience, taxonomy=self.taxonomy)

    def _change(self, participation_id: int, decide: Decision, *, trigger: str) -> StageChangeResult:
        for attempt in range(1, self.max_attempts + 1):
            row = self.session.execute(
                select(
                    Participation.current_stage,
                    Participation.audience_type,
                    Participation.version,
                ).where(Participation.id == participation_id)
            ).one_or_none()
            if row is None:
                raise ParticipationNotFoundError(participation_id)

            current_stage, audience, version = row
            target, reason = decide(current_stage, audience.value)
            if target is None:
                record_stage_transition(trigger, reason)
                return StageChangeResult(participation_id, current_stage, current_stage, False, reason)

            result = self.session.execute(
                update(Participation)
                .where(Participation.id == participation_id, Participation.version == version)
                .values(current_stage=target, version=version + 1)
            )
            if result.rowcount == 1:
                record_stage_transition(trigger, "moved")
                return StageChangeResult(participation_id, current_stage, target, True, reason)

            record_stage_conflict()
            _log_info(
                "Stage write conflict on participation %s (attempt %s/%s)",
                participation_id,
                attempt,
                self.max_attempts,
            )
        raise StageConflictError(participation_id, self.max_attempts)

    def _monotonic(self, candidate: Stage | str) -> Decision:
        def decide(current: Stage, audience: str):
            target = self._coerce_candidate(candidate, audience)
            if not self.taxonomy.is_legal(target.value, audience):
                return None, REASON_ILLEGAL
            if target == current:
                return None, REASON_UNCHANGED
            if not self.is_forward(current, target):
                return None, REASON_NOT_FORWARD
            return target, REASON_ADVANCED

        return decide

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def advance(
        self,
        participation_id: int,
        candidate: Stage | str,
        *,
        trigger: str = "advance",
        commit: bool = True,
    ) -> StageChangeResult:
        """Move forward to ``candidate`` if it outranks the current stage; otherwise no-op."""

        result = self._change(participation_id, self._monotonic(candidate), trigger=trigger)
        if commit:
            self.session.commit()
        return result

    def set_stage(
        self,
        participation_id: int,
        stage: Stage | str,
        *,
        force: bool = False,
        commit: bool = True,
    ) -> StageChangeResult:
        """
        Manual stage change.

        Without ``force`` this is :meth:`advance`. With ``force`` the ordering
        check is skipped so operators can rewind mistakes; the stage must
        still be legal for the participation's audience.
        """

        if not force:
            return self.advance(participation_id, stage, trigger="manual", commit=commit)

        def decide(current: Stage, audience: str):
            target = self._coerce_candidate(stage, audience)
            if not self.taxonomy.is_legal(target.value, audience):
                raise PreconditionError(f"Stage {target.value} is not valid for audience {audience}")
            if target == current:
                return None, REASON_UNCHANGED
            return target, REASON_FORCED

        result = self._change(participation_id, decide, trigger="manual_force")
        if commit:
            self.session.commit()
        return result

    def _participation_ids(self, contact_id: int, event_id: int | None) -> list[int]:
        stmt = select(Participation.id).where(Participation.contact_id == contact_id)
        if event_id is not None:
            stmt = stmt.where(Participation.event_id == event_id)
        return list(self.session.execute(stmt.order_by(Participation.id)).scalars())

    def advance_after_send(
        self,
        send_id: str | int | None,
        contact_ids: Iterable[int],
        *,
        event_id: int | None = None,
        commit: bool = True,
    ) -> SendProgressionResult:
        """
        Apply send-triggered progressions to every contact of a completed send.

        A contact counts as moved when at least one of its participations
        advanced and as skipped otherwise (no participation, or no
        progression rule for its current stage).
        """

        distinct_ids = list(dict.fromkeys(int(contact_id) for contact_id in contact_ids))
        outcome = SendProgressionResult(send_id=send_id, total=len(distinct_ids))

        def decide(current: Stage, audience: str):
            next_value = self.taxonomy.next_after_send(current.value)
            if next_value is None:
                return None, REASON_NO_PROGRESSION
            return self._monotonic(Stage(next_value))(current, audience)

        for contact_id in distinct_ids:
            contact_moved = False
            for participation_id in self._participation_ids(contact_id, event_id):
                change = self._change(participation_id, decide, trigger="send")
                outcome.changes.append(change)
                contact_moved = contact_moved or change.moved
            if contact_moved:
                outcome.moved += 1
            else:
                outcome.skipped += 1

        if commit:
            self.session.commit()
        _log_info(
            "Send %s progression: moved=%s skipped=%s total=%s",
            send_id,
            outcome.moved,
            outcome.skipped,
            outcome.total,
        )
        return outcome

    def preview_after_send(
        self,
        contact_ids: Iterable[int],
        *,
        event_id: int | None = None,
    ) -> dict[str, object]:
        """Dry run of :meth:`advance_after_send`; nothing is written."""

        distinct_ids = list(dict.fromkeys(int(contact_id) for contact_id in contact_ids))
        moves: list[dict[str, object]] = []
        will_move = 0
        for contact_id in distinct_ids:
            stmt = select(Participation).where(Participation.contact_id == contact_id)
            if event_id is not None:
                stmt = stmt.where(Participation.event_id == event_id)
            contact_moves = 0
            for participation in self.session.execute(stmt.order_by(Participation.id)).scalars():
                next_value = self.taxonomy.next_after_send(participation.current_stage.value)
                if next_value is None:
                    continue
                target = Stage(next_value)
                audience = participation.audience_type.value
                if not self.taxonomy.is_legal(target.value, audience):
                    continue
                if not self.is_forward(participation.current_stage, target):
                    continue
                contact_moves += 1
                moves.append(
                    {
                        "contactId": contact_id,
                        "participationId": participation.id,
                        "from": participation.current_stage.value,
                        "to": target.value,
                    }
                )
            if contact_moves:
                will_move += 1
        return {
            "willMove": will_move,
            "willSkip": len(distinct_ids) - will_move,
            "total": len(distinct_ids),
            "moves": moves,
        }

    def bulk_move(
        self,
        event_id: int,
        from_stage: Stage | str,
        to_stage: Stage | str,
        *,
        commit: bool = True,
    ) -> BulkMoveResult:
        """
        Rewrite every participation of ``event_id`` at ``from_stage`` to ``to_stage``.

        Not subject to the monotonic rule; one UPDATE statement. Both stages
        must be recognised stage values or aliases, and participations whose
        audience does not allow ``to_stage`` are left alone and counted as
        skipped.
        """

        source = self._require_stage(from_stage, "from")
        target = self._require_stage(to_stage, "to")
        legal_audiences = [
            audience for audience in AudienceType if self.taxonomy.is_legal(target.value, audience.value)
        ]
        at_source = (Participation.event_id == event_id, Participation.current_stage == source)

        skipped = self.session.execute(
            select(func.count(Participation.id)).where(
                *at_source, Participation.audience_type.not_in(legal_audiences)
            )
        ).scalar_one()
        result = self.session.execute(
            update(Participation)
            .where(*at_source, Participation.audience_type.in_(legal_audiences))
            .values(current_stage=target, version=Participation.version + 1)
            .execution_options(synchronize_session="fetch")
        )
        moved = result.rowcount or 0
        if commit:
            self.session.commit()
        record_stage_transition("bulk", "moved" if moved else REASON_UNCHANGED)
        _log_info(
            "Bulk moved %s participations of event %s from %s to %s (%s skipped)",
            moved,
            event_id,
            source.value,
            target.value,
            skipped,
        )
        return BulkMoveResult(event_id=event_id, from_stage=source, to_stage=target, moved=moved, skipped=skipped)

    def _require_stage(self, stage: Stage | str | None, field: str) -> Stage:
        if isinstance(stage, Stage):
            return stage
        resolved = resolve_stage(stage, taxonomy=self.taxonomy)
        if resolved is None:
            raise RecordValidationError(field, f"Unknown stage {stage!r}")
        return resolved


def rank(stage: Stage | str, taxonomy: StageTaxonomy | None = None) -> float | None:
    """Module-level convenience for :meth:`StageProgressionEngine.rank`."""

    value = stage.value if isinstance(stage, Stage) else str(stage)
    return (taxonomy or get_taxonomy()).rank(value)


def progression_map(taxonomy: StageTaxonomy | None = None) -> Mapping[str, str]:
    return dict((taxonomy or get_taxonomy()).send_progressions)


__all__ = [
    "BulkMoveResult",
    "SendProgressionResult",
    "StageChangeResult",
    "StageProgressionEngine",
    "progression_map",
    "rank",
]
