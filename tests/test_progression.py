import pytest
from sqlalchemy import update

from funnel_app.errors import (
    ParticipationNotFoundError,
    PreconditionError,
    RecordValidationError,
    StageConflictError,
)
from funnel_app.models import AudienceType, Participation, Stage, db
from funnel_app.pipeline.progression import StageProgressionEngine, progression_map, rank


@pytest.fixture
def contact(make_contact):
    return make_contact("jane@x.com", "Jane", "Smith")


def test_rank_order_and_progression_map():
    assert rank(Stage.IN_FUNNEL) < rank(Stage.RSVPED) < rank(Stage.THANKED) < rank(Stage.PAID)
    assert rank("followed_up") == 6.5
    assert rank(Stage.CANT_ATTEND) is None
    assert progression_map() == {"rsvped": "thanked", "paid": "thanked_paid", "attended": "followed_up"}


def test_advance_moves_forward_and_bumps_version(contact, make_participation, event):
    participation = make_participation(contact, event, stage=Stage.GENERAL_AWARENESS)

    result = StageProgressionEngine().advance(participation.id, "Soft Commit")

    assert result.moved
    assert result.previous_stage is Stage.GENERAL_AWARENESS
    assert result.current_stage is Stage.RSVPED
    refreshed = db.session.get(Participation, participation.id)
    assert refreshed.current_stage is Stage.RSVPED
    assert refreshed.version == 2


def test_advance_never_regresses(contact, make_participation, event):
    participation = make_participation(contact, event, stage=Stage.PAID)

    result = StageProgressionEngine().advance(participation.id, Stage.RSVPED)

    assert not result.moved
    assert result.reason == "not_forward"
    assert db.session.get(Participation, participation.id).current_stage is Stage.PAID


def test_advance_to_same_stage_is_a_no_op(contact, make_participation, event):
    participation = make_participation(contact, event, stage=Stage.RSVPED)

    result = StageProgressionEngine().advance(participation.id, "rsvp")

    assert result.reason == "unchanged"
    assert db.session.get(Participation, participation.id).version == 1


def test_stage_illegal_for_audience_is_rejected(contact, make_participation, event):
    participation = make_participation(contact, event, audience=AudienceType.COMMUNITY_PARTNERS)

    result = StageProgressionEngine().advance(participation.id, Stage.PAID)

    assert not result.moved
    assert result.reason == "illegal_for_audience"


def test_cant_attend_rules(contact, make_participation, event):
    engine = StageProgressionEngine()
    declined = make_participation(contact, event, stage=Stage.RSVPED)
    assert engine.advance(declined.id, Stage.CANT_ATTEND).moved

    # Leaving cant_attend is allowed in either direction
    assert engine.advance(declined.id, Stage.PERSONAL_INVITE).moved

    attended = make_participation(contact, None, stage=Stage.ATTENDED)
    result = engine.advance(attended.id, Stage.CANT_ATTEND)
    assert not result.moved
    assert result.reason == "not_forward"


def test_set_stage_without_force_is_monotonic(contact, make_participation, event):
    participation = make_participation(contact, event, stage=Stage.PAID)

    result = StageProgressionEngine().set_stage(participation.id, Stage.GENERAL_AWARENESS)

    assert not result.moved


def test_forced_set_stage_can_move_backwards(contact, make_participation, event):
    participation = make_participation(contact, event, stage=Stage.PAID)

    result = StageProgressionEngine().set_stage(participation.id, Stage.GENERAL_AWARENESS, force=True)

    assert result.moved
    assert result.reason == "forced"
    assert db.session.get(Participation, participation.id).current_stage is Stage.GENERAL_AWARENESS


def test_forced_set_stage_still_checks_audience(contact, make_participation, event):
    participation = make_participation(contact, event, audience=AudienceType.BUSINESS_SPONSOR)

    with pytest.raises(PreconditionError):
        StageProgressionEngine().set_stage(participation.id, Stage.RSVPED, force=True)


def test_unknown_participation_raises():
    with pytest.raises(ParticipationNotFoundError):
        StageProgressionEngine().advance(4242, Stage.RSVPED)


def test_lost_compare_and_swap_is_retried_against_fresh_state(contact, make_participation, event, monkeypatch):
    participation = make_participation(contact, event, stage=Stage.GENERAL_AWARENESS)
    real_execute = db.session.execute
    interfered = []

    def execute(statement, *args, **kwargs):
        if getattr(statement, "is_dml", False) and not interfered:
            interfered.append(True)
            # A concurrent writer moves the row to rsvped between our read and our write
            real_execute(
                update(Participation)
                .where(Participation.id == participation.id)
                .values(current_stage=Stage.RSVPED, version=Participation.version + 1)
            )
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db.session, "execute", execute)

    result = StageProgressionEngine().advance(participation.id, Stage.PAID)

    assert result.moved
    assert result.previous_stage is Stage.RSVPED
    assert result.current_stage is Stage.PAID
    monkeypatch.undo()
    db.session.expire_all()
    assert db.session.get(Participation, participation.id).version == 3


def test_persistent_conflicts_raise_stage_conflict(contact, make_participation, event, monkeypatch):
    participation = make_participation(contact, event, stage=Stage.GENERAL_AWARENESS)
    real_execute = db.session.execute

    def execute(statement, *args, **kwargs):
        if getattr(statement, "is_dml", False):
            real_execute(
                update(Participation)
                .where(Participation.id == participation.id)
                .values(version=Participation.version + 1)
            )
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db.session, "execute", execute)

    with pytest.raises(StageConflictError) as excinfo:
        StageProgressionEngine(max_attempts=2).advance(participation.id, Stage.RSVPED)

    assert excinfo.value.attempts == 2


def test_advance_after_send_counts_contacts(make_contact, make_participation, event):
    rsvped = make_contact("rsvp@example.org")
    paid = make_contact("paid@example.org")
    early = make_contact("early@example.org")
    nobody = make_contact("nobody@example.org")
    make_participation(rsvped, event, stage=Stage.RSVPED)
    make_participation(paid, event, stage=Stage.PAID)
    make_participation(early, event, stage=Stage.GENERAL_AWARENESS)

    result = StageProgressionEngine().advance_after_send(
        "send-1", [rsvped.id, paid.id, early.id, nobody.id, rsvped.id], event_id=event.id
    )

    assert result.as_dict() == {"sendId": "send-1", "moved": 2, "skipped": 2, "total": 4}
    stages = {p.contact_id: p.current_stage for p in Participation.query.all()}
    assert stages[rsvped.id] is Stage.THANKED
    assert stages[paid.id] is Stage.THANKED_PAID
    assert stages[early.id] is Stage.GENERAL_AWARENESS


def test_preview_after_send_writes_nothing(make_contact, make_participation, event):
    contact = make_contact("attendee@example.org")
    participation = make_participation(contact, event, stage=Stage.ATTENDED)

    preview = StageProgressionEngine().preview_after_send([contact.id])

    assert preview["willMove"] == 1
    assert preview["moves"] == [
        {"contactId": contact.id, "participationId": participation.id, "from": "attended", "to": "followed_up"}
    ]
    assert db.session.get(Participation, participation.id).current_stage is Stage.ATTENDED


def test_bulk_move_ignores_ordering(make_contact, make_participation, event):
    for index in range(3):
        make_participation(make_contact(f"guest{index}@example.org"), event, stage=Stage.PAID)
    make_participation(make_contact("other@example.org"), event, stage=Stage.RSVPED)

    result = StageProgressionEngine().bulk_move(event.id, "paid", "expressed_interest")

    assert result.as_dict() == {"moved": 3, "skipped": 0, "from": "paid", "to": "expressed_interest"}
    assert Participation.query.filter_by(current_stage=Stage.EXPRESSED_INTEREST).count() == 3
    assert Participation.query.filter_by(current_stage=Stage.RSVPED).count() == 1


def test_bulk_move_rejects_unknown_stage_names(make_contact, make_participation, event):
    participation = make_participation(make_contact("early@example.org"), event, stage=Stage.IN_FUNNEL)
    engine = StageProgressionEngine()

    with pytest.raises(RecordValidationError) as excinfo:
        engine.bulk_move(event.id, "rsvp_ed_typo", "attended")
    assert excinfo.value.field == "from"

    with pytest.raises(RecordValidationError) as excinfo:
        engine.bulk_move(event.id, "in_funnel", "atended")
    assert excinfo.value.field == "to"

    db.session.expire_all()
    assert db.session.get(Participation, participation.id).current_stage is Stage.IN_FUNNEL


def test_bulk_move_accepts_aliases(make_contact, make_participation, event):
    make_participation(make_contact("reg@example.org"), event, stage=Stage.RSVPED)

    result = StageProgressionEngine().bulk_move(event.id, "Registered", "checked in")

    assert (result.from_stage, result.to_stage, result.moved) == (Stage.RSVPED, Stage.ATTENDED, 1)


def test_bulk_move_skips_audiences_that_forbid_the_target(make_contact, make_participation, event):
    member = make_participation(make_contact("member@example.org"), event, stage=Stage.RSVPED)
    partner = make_participation(
        make_contact("partner@example.org"), event, stage=Stage.RSVPED, audience=AudienceType.COMMUNITY_PARTNERS
    )

    result = StageProgressionEngine().bulk_move(event.id, "rsvped", "paid")

    assert (result.moved, result.skipped) == (1, 1)
    db.session.expire_all()
    assert db.session.get(Participation, member.id).current_stage is Stage.PAID
    assert db.session.get(Participation, partner.id).current_stage is Stage.RSVPED
