# funnel_app/models/segment.py

from datetime import datetime, timezone

from sqlalchemy import Enum, Index

from .base import BaseModel, db
from .enums import AudienceType, SegmentScope, SegmentType, enum_values


class Segment(BaseModel):
    """
    A named membership set.

    Rule-based segments are a cache of their predicate: members point at the
    segment through ``Contact.segment_id`` and are recomputed on refresh.
    Manual segments keep explicit ``SegmentMember`` rows that are never
    recomputed.
    """

    __tablename__ = "segments"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    segment_type = db.Column(
        Enum(SegmentType, name="segment_type_enum", values_callable=enum_values),
        default=SegmentType.RULE,
        nullable=False,
    )
    scope = db.Column(
        Enum(SegmentScope, name="segment_scope_enum", values_callable=enum_values),
        default=SegmentScope.CONTACT,
        nullable=False,
    )

    # Predicate
    event_id = db.Column(db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=True)
    audience_type = db.Column(
        Enum(AudienceType, name="segment_audience_type_enum", values_callable=enum_values),
        nullable=True,
    )
    stages = db.Column(db.JSON, nullable=False, default=list)
    tags = db.Column(db.JSON, nullable=False, default=list)
    engagement_tiers = db.Column(db.JSON, nullable=False, default=list)

    # Materialization bookkeeping
    is_smart_list = db.Column(db.Boolean, default=False, nullable=False)
    member_count = db.Column(db.Integer, default=0, nullable=False)
    last_materialized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    usage_count = db.Column(db.Integer, default=0, nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    organization = db.relationship("Organization", back_populates="segments")
    event = db.relationship("Event", foreign_keys=[event_id])
    pointed_contacts = db.relationship(
        "Contact", back_populates="segment", foreign_keys="Contact.segment_id"
    )
    members = db.relationship("SegmentMember", back_populates="segment", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_segment_event", "event_id"),
        db.UniqueConstraint("organization_id", "name", name="_segment_org_name_uc"),
    )

    def __repr__(self):
        return f"<Segment {self.name} ({self.segment_type.value})>"

    @property
    def is_manual(self):
        return self.segment_type == SegmentType.MANUAL

    def minutes_since_materialized(self, now=None):
        if self.last_materialized_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        last = self.last_materialized_at
        if last.tzinfo is None:
            # SQLite drops tzinfo; values are always written in UTC
            last = last.replace(tzinfo=timezone.utc)
        return (now - last).total_seconds() / 60.0

    def as_dict(self):
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "name": self.name,
            "description": self.description,
            "segmentType": self.segment_type.value,
            "scope": self.scope.value,
            "eventId": self.event_id,
            "audienceType": self.audience_type.value if self.audience_type else None,
            "stages": list(self.stages or []),
            "tags": list(self.tags or []),
            "engagementTiers": list(self.engagement_tiers or []),
            "isSmartList": self.is_smart_list,
            "memberCount": self.member_count,
            "lastMaterializedAt": self.last_materialized_at.isoformat() if self.last_materialized_at else None,
            "usageCount": self.usage_count,
        }


class SegmentMember(BaseModel):
    """Explicit membership row for manual segments"""

    __tablename__ = "segment_members"

    id = db.Column(db.Integer, primary_key=True)
    segment_id = db.Column(db.Integer, db.ForeignKey("segments.id", ondelete="CASCADE"), nullable=False)
    contact_id = db.Column(db.Integer, db.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)

    segment = db.relationship("Segment", back_populates="members")
    contact = db.relationship("Contact", back_populates="segment_memberships")

    __table_args__ = (db.UniqueConstraint("segment_id", "contact_id", name="_segment_member_uc"),)

    def __repr__(self):
        return f"<SegmentMember segment={self.segment_id} contact={self.contact_id}>"
