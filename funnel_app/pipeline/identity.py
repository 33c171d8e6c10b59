"""
Identity Resolver.

Email is the only identity key. ``resolve`` returns the existing contact for
a record's email, merging in whatever non-empty fields the record carries,
or creates one. Re-importing the same record is therefore idempotent, and a
blank cell can never wipe data that an earlier import supplied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from funnel_app.errors import ContactNotFoundError, MissingEmailError
from funnel_app.models import Contact, db, normalize_email

# Attributes the resolver may write from a mapped record.
CONTACT_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "goes_by",
    "phone",
    "employer",
    "street",
    "city",
    "state",
    "zip_code",
    "birthday",
    "married",
    "spouse_name",
    "number_of_kids",
    "is_org_member",
    "years_with_organization",
    "leadership_role",
    "org_notes",
    "origin_story",
    "chapter",
    "tags",
    "engagement_tier",
)


@dataclass(frozen=True)
class ResolutionResult:
    contact: Contact
    created: bool
    changed_fields: tuple[str, ...] = ()

    @property
    def updated(self) -> bool:
        return not self.created and bool(self.changed_fields)


def _is_empty(value: object | None) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


class IdentityResolver:
    """Find-or-create contacts by normalized email."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def find_by_email(self, email: str | None) -> Contact | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        return self.session.execute(select(Contact).where(Contact.email == normalized)).scalar_one_or_none()

    def resolve(self, record: Mapping[str, object], *, organization_id: int | None = None) -> ResolutionResult:
        """
        Return the contact for ``record["email"]``, creating it when absent.

        Raises ``MissingEmailError`` when the record has no email. Two
        concurrent first-time inserts of one email converge on a single row:
        the loser's insert fails on the unique index inside a savepoint and
        it merges into the winner's contact instead.
        """

        email = normalize_email(record.get("email"))
        if email is None:
            raise MissingEmailError()

        contact = self.find_by_email(email)
        if contact is not None:
            changed = self._merge(contact, record, organization_id)
            return ResolutionResult(contact, created=False, changed_fields=changed)

        contact = Contact(email=email, married=False, number_of_kids=0, is_org_member=False, tags=[])
        changed = self._merge(contact, record, organization_id)
        try:
            with self.session.begin_nested():
                self.session.add(contact)
                self.session.flush()
        except IntegrityError:
            existing = self.find_by_email(email)
            if existing is None:
                raise
            if has_app_context():
                current_app.logger.info("Contact %s was created concurrently; merging", email)
            changed = self._merge(existing, record, organization_id)
            return ResolutionResult(existing, created=False, changed_fields=changed)
        return ResolutionResult(contact, created=True, changed_fields=changed)

    def _merge(
        self,
        contact: Contact,
        record: Mapping[str, object],
        organization_id: int | None,
    ) -> tuple[str, ...]:
        changed: list[str] = []
        for name in CONTACT_FIELDS:
            incoming = record.get(name)
            if _is_empty(incoming):
                continue
            current = getattr(contact, name)
            if name == "tags":
                merged = list(current or [])
                for tag in incoming:
                    if tag not in merged:
                        merged.append(tag)
                incoming = merged
            if current != incoming:
                setattr(contact, name, incoming)
                changed.append(name)

        if organization_id is not None and contact.organization_id is None:
            contact.organization_id = organization_id
            changed.append("organization_id")
        if contact.first_name is None:
            contact.first_name = ""
        if contact.last_name is None:
            contact.last_name = ""
        return tuple(changed)

    def delete_contact(self, contact_id: int, *, commit: bool = True) -> None:
        """Delete a contact and, by cascade, its participations and memberships."""

        contact = self.session.get(Contact, contact_id)
        if contact is None:
            raise ContactNotFoundError(contact_id)
        self.session.delete(contact)
        if commit:
            self.session.commit()
        if has_app_context():
            current_app.logger.info("Deleted contact %s", contact_id)


__all__ = ["CONTACT_FIELDS", "IdentityResolver", "ResolutionResult"]
