# funnel_app/models/enums.py
"""
Enums for funnel models.

String values are persisted and compared against historical data, so they
must never change.
"""

from enum import Enum as PyEnum


class Stage(PyEnum):
    """Official funnel stages"""

    IN_FUNNEL = "in_funnel"
    GENERAL_AWARENESS = "general_awareness"
    PERSONAL_INVITE = "personal_invite"
    EXPRESSED_INTEREST = "expressed_interest"
    RSVPED = "rsvped"
    THANKED = "thanked"
    PAID = "paid"
    THANKED_PAID = "thanked_paid"
    ATTENDED = "attended"
    FOLLOWED_UP = "followed_up"
    CANT_ATTEND = "cant_attend"


class AudienceType(PyEnum):
    """Audience a participation belongs to; scopes the legal stages"""

    ORG_MEMBERS = "org_members"
    FRIENDS_FAMILY = "friends_family"
    COMMUNITY_PARTNERS = "community_partners"
    BUSINESS_SPONSOR = "business_sponsor"
    CHAMPIONS = "champions"


class SegmentType(PyEnum):
    """How segment membership is decided"""

    RULE = "rule"  # predicate over contact attributes
    MANUAL = "manual"  # explicit, user-curated id set


class SegmentScope(PyEnum):
    """Population a rule-based segment evaluates against"""

    CONTACT = "contact"
    ORG_MEMBER = "org_member"
    EVENT_ATTENDEE = "event_attendee"


def enum_values(enum_cls):
    """Persist enum ``value`` strings rather than member names."""
    return [member.value for member in enum_cls]
