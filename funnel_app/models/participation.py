# funnel_app/models/participation.py

from sqlalchemy import Enum, Index
from sqlalchemy.types import DECIMAL

from .base import BaseModel, db
from .enums import AudienceType, Stage, enum_values
from .response_bag import ResponseBag, ResponseBagType


class Participation(BaseModel):
    """
    A contact's funnel state for one event.

    ``event_id`` is null for organization-wide funnels (e.g. champion
    recruitment). ``version`` is bumped on every stage write and is the
    compare-and-swap token for stage progression.
    """

    __tablename__ = "participations"

    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_id = db.Column(db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=True)
    audience_type = db.Column(
        Enum(AudienceType, name="audience_type_enum", values_callable=enum_values),
        default=AudienceType.ORG_MEMBERS,
        nullable=False,
        index=True,
    )
    current_stage = db.Column(
        Enum(Stage, name="funnel_stage_enum", values_callable=enum_values),
        default=Stage.IN_FUNNEL,
        nullable=False,
        index=True,
    )
    attended = db.Column(db.Boolean, default=False, nullable=False)
    amount_paid = db.Column(DECIMAL(10, 2), nullable=True)
    ticket_type = db.Column(db.String(100), nullable=True)
    party_size = db.Column(db.Integer, default=1, nullable=False)
    spouse_or_other = db.Column(db.String(100), default="solo", nullable=False)
    responses = db.Column(ResponseBagType, nullable=False, default=ResponseBag)
    version = db.Column(db.Integer, default=1, nullable=False)

    contact = db.relationship("Contact", back_populates="participations")
    event = db.relationship("Event", back_populates="participations")

    __table_args__ = (
        Index("idx_participation_event_stage", "event_id", "current_stage"),
        db.UniqueConstraint("contact_id", "event_id", name="_participation_contact_event_uc"),
    )

    def __repr__(self):
        return (
            f"<Participation contact={self.contact_id} event={self.event_id} "
            f"stage={self.current_stage.value if self.current_stage else None}>"
        )
