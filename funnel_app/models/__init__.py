# funnel_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .contact import Contact, normalize_email
from .enums import AudienceType, SegmentScope, SegmentType, Stage
from .event import Event
from .intake_form import IntakeForm
from .organization import Organization
from .participation import Participation
from .response_bag import ResponseBag, ResponseBagError
from .segment import Segment, SegmentMember

__all__ = [
    "db",
    "BaseModel",
    "Organization",
    "Event",
    "Contact",
    "Participation",
    "Segment",
    "SegmentMember",
    "IntakeForm",
    "ResponseBag",
    "ResponseBagError",
    "normalize_email",
    # Enums
    "Stage",
    "AudienceType",
    "SegmentType",
    "SegmentScope",
]
