from datetime import datetime, timedelta, timezone

import pytest

from config.taxonomy import get_taxonomy
from funnel_app.errors import (
    EventNotFoundError,
    OrganizationNotFoundError,
    RecordValidationError,
    SegmentNotFoundError,
    SegmentTypeError,
)
from funnel_app.models import AudienceType, Contact, Event, Segment, SegmentMember, SegmentScope, SegmentType, Stage, db
from funnel_app.pipeline import segments as segments_module
from funnel_app.pipeline.segments import SegmentMaterializer, is_stale


def _segment(organization, name, *, segment_type=SegmentType.RULE, scope=SegmentScope.CONTACT, **criteria):
    segment = Segment(
        organization_id=organization.id,
        name=name,
        segment_type=segment_type,
        scope=scope,
        event_id=criteria.get("event_id"),
        audience_type=criteria.get("audience_type"),
        stages=criteria.get("stages", []),
        tags=criteria.get("tags", []),
        engagement_tiers=criteria.get("engagement_tiers", []),
        is_smart_list=criteria.get("is_smart_list", False),
    )
    db.session.add(segment)
    db.session.commit()
    return segment


def _pointer(contact_id):
    return db.session.get(Contact, contact_id).segment_id


def test_populate_points_matching_contacts_at_segment(organization, other_organization, event, make_contact, make_participation):
    rsvped = make_contact("rsvp@example.org")
    paid = make_contact("paid@example.org")
    outsider = make_contact("outsider@example.org", organization_id=other_organization.id)
    other_event = Event(organization_id=other_organization.id, title="Hilltop Picnic", slug="hilltop-picnic")
    db.session.add(other_event)
    db.session.commit()
    make_participation(rsvped, event, stage=Stage.RSVPED)
    make_participation(paid, event, stage=Stage.PAID)
    make_participation(outsider, other_event, stage=Stage.RSVPED)
    segment = _segment(organization, "Soft commits", stages=["rsvped"])

    result = SegmentMaterializer().populate(segment.id)

    assert result.member_count == 1
    assert _pointer(rsvped.id) == segment.id
    assert _pointer(paid.id) is None
    assert _pointer(outsider.id) is None
    assert db.session.get(Segment, segment.id).last_materialized_at is not None


def test_repopulate_drops_contacts_that_stopped_matching(organization, event, make_contact, make_participation):
    contact = make_contact("mover@example.org")
    participation = make_participation(contact, event, stage=Stage.RSVPED)
    segment = _segment(organization, "Soft commits", stages=["rsvped"])
    materializer = SegmentMaterializer()
    materializer.populate(segment.id)

    participation.current_stage = Stage.PAID
    db.session.commit()
    result = materializer.populate(segment.id)

    assert result.member_count == 0
    assert _pointer(contact.id) is None


def test_contact_points_at_last_populated_segment(organization, make_contact):
    contact = make_contact("both@example.org", tags=["Donor"])
    first = _segment(organization, "Everyone")
    second = _segment(organization, "Donors", tags=["donor"])
    materializer = SegmentMaterializer()

    materializer.populate(first.id)
    materializer.populate(second.id)

    assert _pointer(contact.id) == second.id


def test_tags_tiers_and_member_scope(organization, make_contact):
    donor = make_contact("donor@example.org", tags=["VIP", "donor"], engagement_tier="gold", is_org_member=True)
    make_contact("volunteer@example.org", tags=["volunteer"], engagement_tier="gold")
    make_contact("member@example.org", is_org_member=True, engagement_tier="bronze")
    materializer = SegmentMaterializer()

    tagged = _segment(organization, "VIP or board", tags=["vip", "board"])
    gold_members = _segment(organization, "Gold members", scope=SegmentScope.ORG_MEMBER, engagement_tiers=["gold"])

    assert materializer.matching_contact_ids(tagged) == [donor.id]
    assert materializer.matching_contact_ids(gold_members) == [donor.id]


def test_event_attendee_scope_uses_attendance(organization, event, make_contact, make_participation):
    attended = make_contact("came@example.org")
    followed = make_contact("followed@example.org")
    rsvped = make_contact("noshow@example.org")
    make_participation(attended, event, stage=Stage.RSVPED, attended=True)
    make_participation(followed, event, stage=Stage.FOLLOWED_UP)
    make_participation(rsvped, event, stage=Stage.RSVPED)
    segment = _segment(organization, "Attendees", scope=SegmentScope.EVENT_ATTENDEE, event_id=event.id)

    assert SegmentMaterializer().matching_contact_ids(segment) == [attended.id, followed.id]


def test_manual_segments_are_curated_not_populated(organization, make_contact):
    first = make_contact("a@example.org", "Ann", "Zeta")
    second = make_contact("b@example.org", "Bob", "Alpha")
    segment = _segment(organization, "Board", segment_type=SegmentType.MANUAL)
    materializer = SegmentMaterializer()

    with pytest.raises(SegmentTypeError):
        materializer.populate(segment.id)

    outcome = materializer.assign(segment.id, [first.id, second.id, first.id, 999])
    again = materializer.assign(segment.id, [second.id])
    members = materializer.get_members(segment.id)

    assert outcome == {"added": 2, "memberCount": 2, "missing": [999]}
    assert again["added"] == 0
    assert [member["email"] for member in members.members] == ["b@example.org", "a@example.org"]
    assert members.refreshed is False


def test_assign_rejects_rule_segments(organization, make_contact):
    contact = make_contact("a@example.org")
    segment = _segment(organization, "Rule")

    with pytest.raises(SegmentTypeError):
        SegmentMaterializer().assign(segment.id, [contact.id])


def test_get_members_refreshes_stale_smart_lists(organization, make_contact):
    make_contact("member@example.org", "Mia", "Member", is_org_member=True)
    segment = _segment(organization, "All Members", scope=SegmentScope.ORG_MEMBER, is_smart_list=True)
    materializer = SegmentMaterializer()

    first = materializer.get_members(segment.id)
    second = materializer.get_members(segment.id)

    assert first.refreshed is True
    assert first.members[0]["firstName"] == "Mia"
    assert second.refreshed is False
    assert db.session.get(Segment, segment.id).usage_count == 2

    stored = db.session.get(Segment, segment.id)
    stored.last_materialized_at = datetime.now(timezone.utc) - timedelta(minutes=10)
    db.session.commit()

    assert materializer.get_members(segment.id).refreshed is True
    assert materializer.get_members(segment.id, auto_refresh=False).refreshed is False


def test_is_stale_threshold(organization):
    segment = _segment(organization, "Smart", is_smart_list=True)
    now = datetime.now(timezone.utc)

    assert is_stale(segment, now=now)
    segment.last_materialized_at = now - timedelta(minutes=3)
    assert not is_stale(segment, now=now)
    assert is_stale(segment, threshold_minutes=2, now=now)

    plain = _segment(organization, "Plain")
    assert not is_stale(plain)


def test_unknown_segment_raises():
    with pytest.raises(SegmentNotFoundError):
        SegmentMaterializer().populate(31337)


def test_create_event_smart_lists_is_idempotent(event, make_contact, make_participation):
    make_participation(make_contact("paid@example.org"), event, stage=Stage.PAID)
    make_participation(make_contact("hot@example.org"), event, stage=Stage.EXPRESSED_INTEREST)
    materializer = SegmentMaterializer()

    segments = materializer.create_event_smart_lists(event.id)
    again = materializer.create_event_smart_lists(event.id)

    by_name = {segment.name: segment for segment in segments}
    assert set(by_name) == {
        "Spring Gala: All Stages",
        "Spring Gala: Paid RSVPs",
        "Spring Gala: Soft Commits",
        "Spring Gala: Hot Leads",
        "Spring Gala: In Funnel",
    }
    assert by_name["Spring Gala: Paid RSVPs"].member_count == 1
    assert by_name["Spring Gala: Soft Commits"].member_count == 0
    assert all(segment.is_smart_list for segment in segments)
    assert [segment.id for segment in again] == [segment.id for segment in segments]


def test_create_event_smart_lists_for_unknown_event():
    with pytest.raises(EventNotFoundError):
        SegmentMaterializer().create_event_smart_lists(777)


def test_org_smart_lists_and_stale_refresh(organization, make_contact):
    make_contact("member@example.org", is_org_member=True)
    materializer = SegmentMaterializer()

    segments = materializer.create_org_smart_lists(organization.id)
    members = next(segment for segment in segments if segment.name == "All Members")

    assert members.member_count == 1
    assert materializer.refresh_stale_smart_lists() == []
    assert sorted(materializer.refresh_stale_smart_lists(threshold_minutes=-1)) == sorted(s.id for s in segments)


def test_preview_counts_without_saving(organization, event, make_contact, make_participation):
    make_participation(make_contact("a@example.org"), event, stage=Stage.RSVPED)
    make_participation(make_contact("b@example.org"), event, stage=Stage.RSVPED)

    preview = SegmentMaterializer().preview(organization.id, stages=["rsvped"], sample_size=1)

    assert preview["count"] == 2
    assert len(preview["sample"]) == 1
    assert Segment.query.count() == 0


def test_repeated_populate_is_reproducible(organization, event, make_contact, make_participation):
    for index, stage in enumerate([Stage.RSVPED, Stage.PAID, Stage.RSVPED, Stage.IN_FUNNEL]):
        make_participation(make_contact(f"guest{index}@example.org", last_name=f"Guest{index}"), event, stage=stage)
    segment = _segment(organization, "Committed", event_id=event.id, stages=["rsvped", "paid"])
    materializer = SegmentMaterializer()

    first = materializer.populate(segment.id)
    first_ids = [member["id"] for member in materializer.get_members(segment.id, auto_refresh=False).members]
    second = materializer.populate(segment.id)
    second_ids = [member["id"] for member in materializer.get_members(segment.id, auto_refresh=False).members]

    assert first.member_count == second.member_count == 3
    assert first_ids == second_ids
    assert db.session.get(Segment, segment.id).member_count == 3


def test_segment_locks_do_not_outlive_their_users(organization, make_contact):
    make_contact("a@example.org")
    segment = _segment(organization, "Everyone")
    materializer = SegmentMaterializer()

    materializer.populate(segment.id)
    materializer.delete_segment(segment.id)

    assert segment.id not in segments_module._segment_locks


def test_create_rule_segment_populates_it(organization, event, make_contact, make_participation):
    make_participation(make_contact("a@example.org"), event, stage=Stage.RSVPED)
    make_participation(make_contact("b@example.org"), event, stage=Stage.PAID)

    segment = SegmentMaterializer().create_segment(
        organization.id,
        {"name": " Soft commits ", "eventId": event.id, "stages": "Registered, rsvped", "audienceType": "members"},
    )

    assert segment.name == "Soft commits"
    assert segment.segment_type is SegmentType.RULE
    assert segment.stages == ["rsvped"]
    assert segment.audience_type is AudienceType.ORG_MEMBERS
    assert segment.member_count == 1
    assert segment.last_materialized_at is not None


def test_create_manual_segment_with_members(organization, make_contact):
    contact = make_contact("a@example.org")

    segment = SegmentMaterializer().create_segment(
        organization.id, {"name": "Board", "segmentType": "manual"}, contact_ids=[contact.id, 404]
    )

    assert segment.is_manual
    assert segment.member_count == 1
    assert [member.contact_id for member in segment.members] == [contact.id]


@pytest.mark.parametrize(
    "data, field",
    [
        ({}, "name"),
        ({"name": "  "}, "name"),
        ({"name": "X", "audienceType": "donors"}, "audienceType"),
        ({"name": "X", "stages": ["rsvped", "atended"]}, "stages"),
        ({"name": "X", "scope": "everyone"}, "scope"),
        ({"name": "X", "segmentType": "dynamic"}, "segmentType"),
        ({"name": "X", "segmentType": "manual", "isSmartList": True}, "isSmartList"),
    ],
)
def test_create_segment_rejects_bad_fields(organization, data, field):
    with pytest.raises(RecordValidationError) as excinfo:
        SegmentMaterializer().create_segment(organization.id, data)

    assert excinfo.value.field == field
    assert Segment.query.count() == 0


def test_create_segment_checks_names_and_events(organization, other_organization):
    foreign_event = Event(organization_id=other_organization.id, title="Hilltop Picnic", slug="hilltop-picnic")
    db.session.add(foreign_event)
    db.session.commit()
    materializer = SegmentMaterializer()
    materializer.create_segment(organization.id, {"name": "Members", "scope": "org_member"})

    with pytest.raises(RecordValidationError) as duplicate:
        materializer.create_segment(organization.id, {"name": "Members"})
    with pytest.raises(RecordValidationError) as foreign:
        materializer.create_segment(organization.id, {"name": "Picnic", "eventId": foreign_event.id})
    with pytest.raises(EventNotFoundError):
        materializer.create_segment(organization.id, {"name": "Ghost", "eventId": 999})
    with pytest.raises(OrganizationNotFoundError):
        materializer.create_segment(999, {"name": "Nowhere"})

    assert duplicate.value.field == "name"
    assert foreign.value.field == "eventId"
    # same name in another organization is fine
    assert materializer.create_segment(other_organization.id, {"name": "Members"}).id


def test_update_segment_repopulates_on_predicate_change(organization, make_contact):
    member = make_contact("member@example.org", is_org_member=True)
    guest = make_contact("guest@example.org")
    materializer = SegmentMaterializer()
    segment = materializer.create_segment(organization.id, {"name": "Members", "scope": "org_member"})
    assert segment.member_count == 1
    materialized_at = segment.last_materialized_at

    renamed = materializer.update_segment(segment.id, {"name": "Org members", "description": "All of them"})
    widened = materializer.update_segment(segment.id, {"scope": "contact"})

    assert renamed.name == "Org members"
    assert renamed.last_materialized_at == materialized_at
    assert widened.member_count == 2
    assert _pointer(member.id) == _pointer(guest.id) == segment.id


def test_update_segment_refuses_type_change(organization):
    materializer = SegmentMaterializer()
    segment = materializer.create_segment(organization.id, {"name": "Rules"})
    materializer.create_segment(organization.id, {"name": "Taken"})

    with pytest.raises(SegmentTypeError):
        materializer.update_segment(segment.id, {"segmentType": "manual"})
    with pytest.raises(RecordValidationError):
        materializer.update_segment(segment.id, {"name": "Taken"})
    with pytest.raises(SegmentNotFoundError):
        materializer.update_segment(999, {"name": "Other"})


def test_delete_segment_unassigns_contacts(organization, make_contact):
    contact = make_contact("a@example.org")
    materializer = SegmentMaterializer()
    rule = materializer.create_segment(organization.id, {"name": "Everyone"})
    manual = materializer.create_segment(organization.id, {"name": "Board", "segmentType": "manual"}, contact_ids=[contact.id])
    assert _pointer(contact.id) == rule.id

    deleted_rule = materializer.delete_segment(rule.id)
    deleted_manual = materializer.delete_segment(manual.id)

    assert deleted_rule == {"segmentId": rule.id, "deleted": True, "unassigned": 1}
    assert deleted_manual["unassigned"] == 0
    assert _pointer(contact.id) is None
    assert SegmentMember.query.count() == 0
    assert db.session.get(Contact, contact.id) is not None
    with pytest.raises(SegmentNotFoundError):
        materializer.delete_segment(rule.id)


def test_list_segments_hides_inactive(organization, other_organization):
    materializer = SegmentMaterializer()
    materializer.create_segment(organization.id, {"name": "Zeta"})
    retired = materializer.create_segment(organization.id, {"name": "Alpha"})
    materializer.create_segment(other_organization.id, {"name": "Elsewhere"})
    materializer.update_segment(retired.id, {"isActive": False})

    assert [segment.name for segment in materializer.list_segments(organization.id)] == ["Zeta"]
    assert [segment.name for segment in materializer.list_segments(organization.id, include_inactive=True)] == [
        "Alpha",
        "Zeta",
    ]


def test_segment_stats(organization, event, make_contact, make_participation):
    make_participation(make_contact("a@example.org", is_org_member=True), event, stage=Stage.PAID)
    make_participation(make_contact("b@example.org"), event, stage=Stage.RSVPED)
    make_participation(make_contact("c@example.org"), event, stage=Stage.RSVPED)
    make_contact("d@example.org")
    materializer = SegmentMaterializer()
    segment = materializer.create_segment(organization.id, {"name": "Gala", "eventId": event.id})

    stats = materializer.segment_stats(segment.id)

    assert stats["memberCount"] == 3
    assert stats["orgMembers"] == 1
    assert stats["stageCounts"] == {"rsvped": 2, "paid": 1}
    assert list(stats["stageCounts"]) == ["rsvped", "paid"]
    assert stats["isStale"] is False


def test_pipeline_registry_counts_per_stage(event, make_contact, make_participation):
    make_participation(make_contact("a@example.org"), event, stage=Stage.RSVPED)
    make_participation(make_contact("b@example.org"), event, stage=Stage.RSVPED)
    make_participation(
        make_contact("c@example.org"), event, stage=Stage.EXPRESSED_INTEREST, audience=AudienceType.COMMUNITY_PARTNERS
    )
    materializer = SegmentMaterializer()

    everyone = materializer.pipeline_registry(event.id)
    partners = materializer.pipeline_registry(event.id, AudienceType.COMMUNITY_PARTNERS)

    taxonomy = get_taxonomy()
    assert [row["stage"] for row in everyone["stages"]] == list(taxonomy.stage_values())
    assert everyone["total"] == 3
    assert {row["stage"]: row["count"] for row in everyone["stages"]}["rsvped"] == 2
    assert partners["total"] == 1
    assert [row["stage"] for row in partners["stages"]] == list(taxonomy.legal_stages("community_partners"))
    assert "paid" not in [row["stage"] for row in partners["stages"]]
    assert {row["stage"]: row["count"] for row in partners["stages"]}["rsvped"] == 0
    with pytest.raises(EventNotFoundError):
        materializer.pipeline_registry(999)
