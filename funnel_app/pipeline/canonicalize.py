"""
Stage and audience canonicalization.

``canonicalize`` and ``canonicalize_audience`` are pure and total: any
input, including ``None`` and labels nobody has seen before, produces an
official value. Ingestion must never stop because a spreadsheet invented a
new spelling of "RSVP'd".

``resolve_stage`` and ``resolve_audience`` are the strict lookups for values
an operator typed on purpose (bulk moves, pushes, segment filters); they
return ``None`` instead of guessing.
"""

from __future__ import annotations

import re
from typing import Mapping

from config.taxonomy import StageTaxonomy, get_taxonomy

from funnel_app.models.enums import AudienceType, Stage

from .field_mapper import normalize_header

_NON_WORD = re.compile(r"[^a-z0-9]+")

AUDIENCE_SYNONYMS: Mapping[str, AudienceType] = {
    "org_member": AudienceType.ORG_MEMBERS,
    "members": AudienceType.ORG_MEMBERS,
    "member": AudienceType.ORG_MEMBERS,
    "organization_members": AudienceType.ORG_MEMBERS,
    "friends_and_family": AudienceType.FRIENDS_FAMILY,
    "friends_family": AudienceType.FRIENDS_FAMILY,
    "family": AudienceType.FRIENDS_FAMILY,
    "friends": AudienceType.FRIENDS_FAMILY,
    "community_partner": AudienceType.COMMUNITY_PARTNERS,
    "partners": AudienceType.COMMUNITY_PARTNERS,
    "partner": AudienceType.COMMUNITY_PARTNERS,
    "business_sponsors": AudienceType.BUSINESS_SPONSOR,
    "sponsors": AudienceType.BUSINESS_SPONSOR,
    "sponsor": AudienceType.BUSINESS_SPONSOR,
    "champion": AudienceType.CHAMPIONS,
}


def _stage_token(raw: object | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, Stage):
        return raw.value
    text = str(raw).strip().lower().replace("'", "").replace("’", "")
    return _NON_WORD.sub("_", text).strip("_")


def _audience_value(audience: AudienceType | str | None) -> str | None:
    if audience is None:
        return None
    if isinstance(audience, AudienceType):
        return audience.value
    return canonicalize_audience(audience).value


def _audience_token(raw: object) -> str:
    return _NON_WORD.sub("_", str(raw).strip().lower().replace("&", " and ")).strip("_")


def resolve_stage(raw_stage: object | None, *, taxonomy: StageTaxonomy | None = None) -> Stage | None:
    """Official stage for an alias or stage value; ``None`` when unrecognised."""

    taxonomy = taxonomy or get_taxonomy()
    token = _stage_token(raw_stage)
    if not token:
        return None
    value = taxonomy.resolve_alias(token)
    if value is None and taxonomy.is_official(token):
        value = token
    return Stage(value) if value is not None else None


def resolve_audience(raw: object | None) -> AudienceType | None:
    """Audience for an official value or known synonym; ``None`` when unrecognised."""

    if isinstance(raw, AudienceType):
        return raw
    if raw is None:
        return None
    token = _audience_token(raw)
    if not token:
        return None
    if get_taxonomy().is_audience(token):
        return AudienceType(token)
    return AUDIENCE_SYNONYMS.get(token)


def canonicalize(
    raw_stage: object | None,
    audience_type: AudienceType | str | None = None,
    *,
    taxonomy: StageTaxonomy | None = None,
) -> Stage:
    """
    Map a raw stage label onto an official stage legal for ``audience_type``.

    Lookup order: alias table, official stage values, then the default
    stage. A result that is not legal for the audience falls back to the
    audience's first legal stage.
    """

    taxonomy = taxonomy or get_taxonomy()
    audience = _audience_value(audience_type)
    resolved = resolve_stage(raw_stage, taxonomy=taxonomy)

    value = resolved.value if resolved is not None else taxonomy.default_stage
    if not taxonomy.is_legal(value, audience):
        value = taxonomy.fallback_stage(audience)
    return Stage(value)


def canonicalize_audience(raw: object | None, *, default: AudienceType = AudienceType.ORG_MEMBERS) -> AudienceType:
    """Map a free-text audience label to an ``AudienceType``."""

    audience = resolve_audience(raw)
    return audience if audience is not None else default


_PAID_TOKENS = frozenset({"paid", "complete", "completed"})
_RSVP_TOKENS = ("yes", "confirmed", "attending")
_LIKELIHOOD_RULES: tuple[tuple[re.Pattern, Stage], ...] = (
    (re.compile(r"\b(i'?m in|i am in|definitely|count me in)\b"), Stage.RSVPED),
    (re.compile(r"\b(most likely|probably|likely)\b"), Stage.EXPRESSED_INTEREST),
    (re.compile(r"\b(maybe|not sure|unsure)\b"), Stage.GENERAL_AWARENESS),
)
_PERSONAL_SOURCES = ("personal", "friend")


def _answer(responses: Mapping[str, object], *keys: str) -> str:
    normalized = {normalize_header(str(key)): value for key, value in responses.items()}
    for key in keys:
        value = normalized.get(key)
        if value is not None and str(value).strip():
            return str(value).strip().lower()
    return ""


def infer_stage_from_responses(responses: Mapping[str, object] | None) -> Stage:
    """
    Derive a stage from intake-form answers.

    Payment status outranks an explicit RSVP, which outranks the
    free-text likelihood answer; invitation source is the last resort.
    Payment and RSVP answers must match exactly, so "not paid" carries no
    signal. Answers with no signal at all leave the contact ``in_funnel``.
    """

    responses = responses or {}

    payment = _answer(responses, "payment_status", "payment")
    if payment in _PAID_TOKENS:
        return Stage.PAID

    rsvp = _answer(responses, "rsvp", "rsvp_status", "will_you_attend")
    if rsvp in _RSVP_TOKENS:
        return Stage.RSVPED

    likelihood = _answer(responses, "likelihood", "likelihood_to_attend", "how_likely", "attendance_likelihood")
    if likelihood:
        for pattern, stage in _LIKELIHOOD_RULES:
            if pattern.search(likelihood.replace("’", "'")):
                return stage
        return Stage.EXPRESSED_INTEREST

    source = _answer(responses, "invitation_source", "how_did_you_hear", "referral_source")
    if not source:
        return Stage.IN_FUNNEL
    if any(token in source for token in _PERSONAL_SOURCES):
        return Stage.PERSONAL_INVITE
    return Stage.GENERAL_AWARENESS


__all__ = [
    "AUDIENCE_SYNONYMS",
    "canonicalize",
    "canonicalize_audience",
    "infer_stage_from_responses",
    "resolve_audience",
    "resolve_stage",
]
