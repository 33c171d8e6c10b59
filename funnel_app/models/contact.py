# funnel_app/models/contact.py
"""
Contact model: the single universal person record.

Email is the natural key. It is stored trimmed and lower-cased so equality
lookups never depend on the caller normalizing first.
"""

from flask import current_app
from sqlalchemy import Index
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import validates

from .base import BaseModel, db


def normalize_email(value):
    """Trim and lower-case an email address; blank values become ``None``."""
    if value is None:
        return None
    token = str(value).strip().lower()
    return token or None


class Contact(BaseModel):
    """A person known to one or more organizations"""

    __tablename__ = "contacts"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False, index=True)
    last_name = db.Column(db.String(100), nullable=False, index=True)
    phone = db.Column(db.String(40), nullable=True)
    goes_by = db.Column(db.String(100), nullable=True)

    # Personal details
    employer = db.Column(db.String(200), nullable=True)
    street = db.Column(db.String(200), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(50), nullable=True)
    zip_code = db.Column(db.String(20), nullable=True)
    birthday = db.Column(db.String(40), nullable=True)  # free text from imports ("May 4")
    married = db.Column(db.Boolean, default=False, nullable=False)
    spouse_name = db.Column(db.String(200), nullable=True)
    number_of_kids = db.Column(db.Integer, default=0, nullable=False)

    # Membership
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)
    is_org_member = db.Column(db.Boolean, default=False, nullable=False)
    years_with_organization = db.Column(db.Integer, nullable=True)
    leadership_role = db.Column(db.String(200), nullable=True)
    org_notes = db.Column(db.Text, nullable=True)
    origin_story = db.Column(db.Text, nullable=True)
    chapter = db.Column(db.String(200), nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)
    engagement_tier = db.Column(db.String(50), nullable=True, index=True)

    # Current rule-based segment (single-owner pointer)
    segment_id = db.Column(
        db.Integer, db.ForeignKey("segments.id", ondelete="SET NULL"), nullable=True, index=True
    )

    organization = db.relationship("Organization", foreign_keys=[organization_id])
    segment = db.relationship("Segment", foreign_keys=[segment_id], back_populates="pointed_contacts")
    participations = db.relationship(
        "Participation", back_populates="contact", cascade="all, delete-orphan"
    )
    segment_memberships = db.relationship(
        "SegmentMember", back_populates="contact", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_contact_name", "last_name", "first_name"),
        Index("idx_contact_org_member", "organization_id", "is_org_member"),
    )

    def __repr__(self):
        return f"<Contact {self.email}>"

    @validates("email")
    def validate_email(self, key, value):
        normalized = normalize_email(value)
        if normalized is None:
            raise ValueError("Contact email is required")
        return normalized

    def get_full_name(self):
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "Unknown"

    def get_display_name(self):
        """Return goes-by name or first name"""
        return self.goes_by or self.first_name

    def to_projection(self):
        """Fields a campaign composer needs for personalised sends."""
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "goesBy": self.get_display_name(),
            "email": self.email,
            "phone": self.phone,
        }

    @staticmethod
    def find_by_email(email):
        """Find contact by normalized email with error handling"""
        normalized = normalize_email(email)
        if normalized is None:
            return None
        try:
            return Contact.query.filter_by(email=normalized).first()
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding contact by email {normalized}: {str(e)}")
            raise
