"""
Funnel pipeline components.

Mapping, validation and canonicalization are pure functions; identity
resolution, stage progression, segment materialization and ingestion are
session-bound services.
"""

from .canonicalize import (
    canonicalize,
    canonicalize_audience,
    infer_stage_from_responses,
    resolve_audience,
    resolve_stage,
)
from .field_mapper import (
    CANONICAL_FIELDS,
    TARGET_CONTACT,
    TARGET_MEMBERSHIP,
    TARGET_PARTICIPATION,
    TARGET_TYPES,
    describe_fields,
    map_record,
    normalize_header,
)
from .identity import IdentityResolver, ResolutionResult
from .ingest import (
    IngestionBatchResult,
    IngestionContext,
    IngestionPipeline,
    PushResult,
    RecordOutcome,
    create_contact,
    ingest_csv,
    ingest_rows,
    submit_form,
)
from .names import ParsedName, parse_full_name
from .progression import (
    BulkMoveResult,
    SendProgressionResult,
    StageChangeResult,
    StageProgressionEngine,
    progression_map,
    rank,
)
from .segments import PopulateResult, SegmentMaterializer, SegmentMembers, is_stale, segment_fields
from .validator import RowError, ValidationResult, validate_batch, validate_record

__all__ = [
    "BulkMoveResult",
    "CANONICAL_FIELDS",
    "IdentityResolver",
    "IngestionBatchResult",
    "IngestionContext",
    "IngestionPipeline",
    "ParsedName",
    "PopulateResult",
    "PushResult",
    "RecordOutcome",
    "ResolutionResult",
    "RowError",
    "SegmentMaterializer",
    "SegmentMembers",
    "SendProgressionResult",
    "StageChangeResult",
    "StageProgressionEngine",
    "TARGET_CONTACT",
    "TARGET_MEMBERSHIP",
    "TARGET_PARTICIPATION",
    "TARGET_TYPES",
    "ValidationResult",
    "canonicalize",
    "canonicalize_audience",
    "create_contact",
    "describe_fields",
    "infer_stage_from_responses",
    "ingest_csv",
    "ingest_rows",
    "is_stale",
    "map_record",
    "normalize_header",
    "parse_full_name",
    "progression_map",
    "rank",
    "resolve_audience",
    "resolve_stage",
    "segment_fields",
    "submit_form",
    "validate_batch",
    "validate_record",
]
