# funnel_app/models/event.py

from flask import current_app
from sqlalchemy import Index
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class Event(BaseModel):
    """An organization event that contacts are funnelled towards"""

    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False, index=True)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    event_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    organization = db.relationship("Organization", back_populates="events")
    participations = db.relationship("Participation", back_populates="event", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_event_org_active", "organization_id", "is_active"),)

    def __repr__(self):
        return f"<Event {self.title}>"

    @staticmethod
    def find_by_id(event_id):
        """Find event by ID with error handling"""
        try:
            return db.session.get(Event, event_id)
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding event by id {event_id}: {str(e)}")
            return None
