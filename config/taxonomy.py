"""
Official funnel taxonomy: stages, audiences, stage aliases and send progressions.

Every component that needs to know "which stages exist", "which stages are
legal for an audience" or "is this forward progress" reads from the single
``StageTaxonomy`` instance returned by :func:`get_taxonomy`. The instance is
immutable and loaded once per process.

Operators can override the alias table, the per-audience legal stage lists and
the send-progression table by pointing ``FUNNEL_TAXONOMY_PATH`` at a JSON or
YAML file. Stage values and their ranks are fixed because they are persisted
and compared against historical data.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, MutableMapping, Sequence

import yaml

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageDefinition:
    """
    A single official stage.

    Attributes:
        value: Persisted string value (e.g. ``rsvped``).
        label: Human readable label.
        rank: Position in the funnel order. ``None`` marks a stage that sits
            outside the order (``cant_attend``).
    """

    value: str
    label: str
    rank: float | None


@dataclass(frozen=True)
class AudienceDefinition:
    """An audience type and the ordered stages legal for it."""

    value: str
    label: str
    legal_stages: tuple[str, ...]


@dataclass(frozen=True, eq=False)
class StageTaxonomy:
    """Lookup interface shared by canonicalization, validation and progression."""

    stages: tuple[StageDefinition, ...]
    audiences: tuple[AudienceDefinition, ...]
    aliases: Mapping[str, str]
    send_progressions: Mapping[str, str]
    default_stage: str = "in_funnel"
    default_audience: str = "org_members"
    unordered_stage: str = "cant_attend"

    def stage_values(self) -> tuple[str, ...]:
        return tuple(stage.value for stage in self.stages)

    def audience_values(self) -> tuple[str, ...]:
        return tuple(audience.value for audience in self.audiences)

    def is_official(self, value: str | None) -> bool:
        return value is not None and any(stage.value == value for stage in self.stages)

    def is_audience(self, value: str | None) -> bool:
        return value is not None and any(audience.value == value for audience in self.audiences)

    def rank(self, value: str) -> float | None:
        for stage in self.stages:
            if stage.value == value:
                return stage.rank
        raise KeyError(f"Unknown stage {value!r}")

    def find_audience(self, value: str | None) -> AudienceDefinition:
        """Return the audience definition, falling back to the default audience."""
        for audience in self.audiences:
            if audience.value == value:
                return audience
        for audience in self.audiences:
            if audience.value == self.default_audience:
                return audience
        raise TaxonomyConfigError(f"Default audience {self.default_audience!r} is not defined.")

    def legal_stages(self, audience: str | None) -> tuple[str, ...]:
        return self.find_audience(audience).legal_stages

    def is_legal(self, stage: str, audience: str | None) -> bool:
        return stage in self.legal_stages(audience)

    def fallback_stage(self, audience: str | None) -> str:
        legal = self.legal_stages(audience)
        return legal[0] if legal else self.default_stage

    def resolve_alias(self, token: str) -> str | None:
        return self.aliases.get(token)

    def next_after_send(self, stage: str) -> str | None:
        return self.send_progressions.get(stage)

    def as_dict(self) -> dict[str, object]:
        """JSON-friendly view used by the API and CLI."""
        return {
            "stages": [{"value": stage.value, "label": stage.label, "rank": stage.rank} for stage in self.stages],
            "audiences": [
                {"value": audience.value, "label": audience.label, "legalStages": list(audience.legal_stages)}
                for audience in self.audiences
            ],
            "aliases": dict(sorted(self.aliases.items())),
            "sendProgressions": dict(self.send_progressions),
            "defaultStage": self.default_stage,
            "defaultAudience": self.default_audience,
        }


# ---------------------------------------------------------------------------
# Default taxonomy
# ---------------------------------------------------------------------------

DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition("in_funnel", "In Funnel", 0),
    StageDefinition("general_awareness", "General Awareness", 1),
    StageDefinition("personal_invite", "Personal Invite", 2),
    StageDefinition("expressed_interest", "Expressed Interest", 3),
    StageDefinition("rsvped", "RSVPed", 4),
    StageDefinition("thanked", "Thanked", 4.5),
    StageDefinition("paid", "Paid", 5),
    StageDefinition("thanked_paid", "Thanked (Paid)", 5.5),
    StageDefinition("attended", "Attended", 6),
    StageDefinition("followed_up", "Followed Up", 6.5),
    StageDefinition("cant_attend", "Can't Attend", None),
)

_ALL_STAGE_VALUES = tuple(stage.value for stage in DEFAULT_STAGES)

DEFAULT_AUDIENCES: tuple[AudienceDefinition, ...] = (
    AudienceDefinition("org_members", "Organization Members", _ALL_STAGE_VALUES),
    AudienceDefinition("friends_family", "Friends & Family", _ALL_STAGE_VALUES),
    AudienceDefinition(
        "community_partners",
        "Community Partners",
        tuple(value for value in _ALL_STAGE_VALUES if value not in {"paid", "thanked_paid"}),
    ),
    AudienceDefinition(
        "business_sponsor",
        "Business Sponsors",
        tuple(value for value in _ALL_STAGE_VALUES if value not in {"rsvped", "thanked"}),
    ),
    AudienceDefinition(
        "champions",
        "Champions",
        (
            "in_funnel",
            "general_awareness",
            "expressed_interest",
            "rsvped",
            "thanked",
            "attended",
            "followed_up",
            "cant_attend",
        ),
    ),
)

DEFAULT_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        # Legacy 6-stage hierarchy
        "soft_commit": "rsvped",
        "rsvp": "rsvped",
        "sop_entry": "in_funnel",
        "aware": "general_awareness",
        "interested": "expressed_interest",
        # Partner / sponsor / champion track labels
        "contacted": "personal_invite",
        "partner": "rsvped",
        "committed": "rsvped",
        "sponsor": "paid",
        "executing": "attended",
        "recognized": "followed_up",
        # Common free-text spellings
        "rsvpd": "rsvped",
        "registered": "rsvped",
        "checked_in": "attended",
        "cant_go": "cant_attend",
        "declined": "cant_attend",
    }
)

DEFAULT_SEND_PROGRESSIONS: Mapping[str, str] = MappingProxyType(
    {
        "rsvped": "thanked",
        "paid": "thanked_paid",
        "attended": "followed_up",
    }
)

DEFAULT_TAXONOMY = StageTaxonomy(
    stages=DEFAULT_STAGES,
    audiences=DEFAULT_AUDIENCES,
    aliases=DEFAULT_ALIASES,
    send_progressions=DEFAULT_SEND_PROGRESSIONS,
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class TaxonomyConfigError(RuntimeError):
    """Raised when a taxonomy override cannot be parsed or is inconsistent."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise TaxonomyConfigError(f"Taxonomy override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise TaxonomyConfigError(f"Unable to read taxonomy override file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise TaxonomyConfigError(f"Taxonomy override file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise TaxonomyConfigError("Taxonomy override must be a JSON/YAML object.")
    return dict(data)


def _token(value: object) -> str:
    return str(value).strip().lower()


def _require_stage(value: object, *, context: str) -> str:
    token = _token(value)
    if token not in _ALL_STAGE_VALUES:
        raise TaxonomyConfigError(f"{context} refers to unknown stage {value!r}.")
    return token


def _coerce_mapping(raw: object | None, *, name: str) -> dict[str, object]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise TaxonomyConfigError(f"Expected mapping for {name}, got {type(raw).__name__}.")
    return dict(raw)


def _coerce_aliases(raw: object | None) -> Mapping[str, str]:
    merged = dict(DEFAULT_ALIASES)
    for alias, target in _coerce_mapping(raw, name="aliases").items():
        key = _token(alias)
        if not key:
            raise TaxonomyConfigError("Alias keys must be non-empty.")
        if key in _ALL_STAGE_VALUES:
            raise TaxonomyConfigError(f"Alias {alias!r} shadows an official stage.")
        merged[key] = _require_stage(target, context=f"aliases.{key}")
    return MappingProxyType(merged)


def _coerce_send_progressions(raw: object | None) -> Mapping[str, str]:
    overrides = _coerce_mapping(raw, name="send_progressions")
    if not overrides:
        return DEFAULT_SEND_PROGRESSIONS
    table: dict[str, str] = {}
    for source, target in overrides.items():
        source_stage = _require_stage(source, context="send_progressions")
        table[source_stage] = _require_stage(target, context=f"send_progressions.{source_stage}")
    return MappingProxyType(table)


def _coerce_audiences(raw: object | None) -> tuple[AudienceDefinition, ...]:
    overrides = _coerce_mapping(raw, name="audiences")
    known = {audience.value for audience in DEFAULT_AUDIENCES}
    for key in overrides:
        if _token(key) not in known:
            raise TaxonomyConfigError(f"Unknown audience {key!r}; audiences are a closed set.")

    normalized = {_token(key): value for key, value in overrides.items()}
    audiences: list[AudienceDefinition] = []
    for audience in DEFAULT_AUDIENCES:
        stages_raw = normalized.get(audience.value)
        if stages_raw is None:
            audiences.append(audience)
            continue
        if not isinstance(stages_raw, Sequence) or isinstance(stages_raw, (str, bytes)):
            raise TaxonomyConfigError(f"audiences.{audience.value} must be a list of stages.")
        stages = tuple(
            _require_stage(item, context=f"audiences.{audience.value}") for item in stages_raw
        )
        if not stages:
            raise TaxonomyConfigError(f"audiences.{audience.value} must list at least one stage.")
        audiences.append(AudienceDefinition(audience.value, audience.label, stages))
    return tuple(audiences)


def _coerce_taxonomy(raw: Mapping[str, object]) -> StageTaxonomy:
    return StageTaxonomy(
        stages=DEFAULT_STAGES,
        audiences=_coerce_audiences(raw.get("audiences")),
        aliases=_coerce_aliases(raw.get("aliases")),
        send_progressions=_coerce_send_progressions(raw.get("send_progressions")),
    )


def load_taxonomy(env: Mapping[str, str] | None = None) -> StageTaxonomy:
    """
    Load the funnel taxonomy.

    If ``FUNNEL_TAXONOMY_PATH`` is present in ``env`` its JSON/YAML content is
    merged over the built-in defaults; otherwise the defaults are returned.
    """

    env_map = env or {}
    override_path = env_map.get("FUNNEL_TAXONOMY_PATH")
    if not override_path:
        return DEFAULT_TAXONOMY
    raw = _load_override(Path(override_path))
    return _coerce_taxonomy(raw)


_cache_lock = threading.Lock()
_cached_taxonomy: StageTaxonomy | None = None


def get_taxonomy() -> StageTaxonomy:
    """Return the process-wide taxonomy, loading it from the environment on first use."""

    global _cached_taxonomy
    if _cached_taxonomy is None:
        with _cache_lock:
            if _cached_taxonomy is None:
                _cached_taxonomy = load_taxonomy(os.environ)
    return _cached_taxonomy


def configure_taxonomy(taxonomy: StageTaxonomy | None) -> None:
    """Install ``taxonomy`` as the process-wide instance (``None`` resets to lazy load)."""

    global _cached_taxonomy
    with _cache_lock:
        _cached_taxonomy = taxonomy


__all__ = [
    "AudienceDefinition",
    "DEFAULT_TAXONOMY",
    "StageDefinition",
    "StageTaxonomy",
    "TaxonomyConfigError",
    "configure_taxonomy",
    "get_taxonomy",
    "load_taxonomy",
]
