# funnel_app/models/intake_form.py

from sqlalchemy import Enum

from .base import BaseModel, db
from .enums import AudienceType, Stage, enum_values


class IntakeForm(BaseModel):
    """Public form that feeds submissions into a funnel"""

    __tablename__ = "intake_forms"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id", ondelete="SET NULL"), nullable=True)
    audience_type = db.Column(
        Enum(AudienceType, name="form_audience_type_enum", values_callable=enum_values),
        default=AudienceType.ORG_MEMBERS,
        nullable=False,
    )
    target_stage = db.Column(
        Enum(Stage, name="form_target_stage_enum", values_callable=enum_values),
        nullable=True,
    )  # None means infer from responses
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    submission_count = db.Column(db.Integer, default=0, nullable=False)

    organization = db.relationship("Organization", foreign_keys=[organization_id])
    event = db.relationship("Event", foreign_keys=[event_id])

    def __repr__(self):
        return f"<IntakeForm {self.slug}>"
