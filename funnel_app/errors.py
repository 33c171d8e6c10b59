# funnel_app/errors.py
"""
Exception hierarchy for the funnel engine.

Routes translate these into HTTP statuses: ``NotFoundError`` → 404,
``RecordValidationError`` and ``PreconditionError`` → 400,
``StageConflictError`` → 409. Store failures (``sqlalchemy.exc.OperationalError``)
are not wrapped and propagate as-is.
"""

from __future__ import annotations


class FunnelError(Exception):
    """Base exception for funnel engine failures."""


class RecordValidationError(FunnelError):
    """A single record failed validation."""

    def __init__(self, field: str | None, message: str) -> None:
        super().__init__(f"{field}: {message}" if field else message)
        self.field = field
        self.message = message

    def as_dict(self) -> dict[str, str | None]:
        return {"field": self.field, "message": self.message}


class MissingEmailError(RecordValidationError):
    """Raised by the identity resolver when a record carries no email."""

    def __init__(self) -> None:
        super().__init__("email", "Email is required to resolve a contact")


class NotFoundError(FunnelError):
    """A referenced entity does not exist."""

    entity = "Record"

    def __init__(self, identifier: object) -> None:
        super().__init__(f"{self.entity} {identifier} not found")
        self.identifier = identifier


class ContactNotFoundError(NotFoundError):
    entity = "Contact"


class ParticipationNotFoundError(NotFoundError):
    entity = "Participation"


class SegmentNotFoundError(NotFoundError):
    entity = "Segment"


class FormNotFoundError(NotFoundError):
    entity = "Form"


class EventNotFoundError(NotFoundError):
    entity = "Event"


class OrganizationNotFoundError(NotFoundError):
    entity = "Organization"


class PreconditionError(FunnelError):
    """A business precondition for the operation does not hold."""


class FormInactiveError(PreconditionError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Form {slug} is not active")
        self.slug = slug


class SegmentTypeError(PreconditionError):
    """Operation is not valid for this kind of segment."""


class StageConflictError(FunnelError):
    """
    Concurrent stage writes kept winning the compare-and-swap.

    Transient: the caller may retry the whole operation.
    """

    def __init__(self, participation_id: int, attempts: int) -> None:
        super().__init__(
            f"Participation {participation_id} stage changed concurrently; gave up after {attempts} attempts"
        )
        self.participation_id = participation_id
        self.attempts = attempts


__all__ = [
    "ContactNotFoundError",
    "EventNotFoundError",
    "FormInactiveError",
    "FormNotFoundError",
    "FunnelError",
    "MissingEmailError",
    "NotFoundError",
    "OrganizationNotFoundError",
    "ParticipationNotFoundError",
    "PreconditionError",
    "RecordValidationError",
    "SegmentNotFoundError",
    "SegmentTypeError",
    "StageConflictError",
]
