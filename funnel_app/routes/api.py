# funnel_app/routes/api.py

"""
JSON API for the funnel engine.

Domain errors map onto HTTP statuses in one place: not-found → 404,
validation and precondition failures → 400, stage conflicts → 409.
"""

import io

from flask import current_app, jsonify, request

from config.taxonomy import get_taxonomy
from funnel_app.adapters.csv_contacts import CSVAdapterError
from funnel_app.errors import (
    EventNotFoundError,
    NotFoundError,
    PreconditionError,
    RecordValidationError,
    StageConflictError,
)
from funnel_app.models import AudienceType, Event, SegmentScope, db
from funnel_app.pipeline.canonicalize import resolve_audience
from funnel_app.pipeline.field_mapper import describe_fields
from funnel_app.pipeline.identity import IdentityResolver
from funnel_app.pipeline.ingest import IngestionContext, IngestionPipeline
from funnel_app.pipeline.progression import StageProgressionEngine
from funnel_app.pipeline.segments import SegmentMaterializer, segment_fields
from funnel_app.pipeline.validator import coerce_bool, coerce_list

_CONTEXT_KEYS = (
    "organizationId",
    "organization_id",
    "eventId",
    "event_id",
    "audienceType",
    "audience_type",
    "targetStage",
    "target_stage",
    "targetType",
    "target_type",
)

_SEGMENT_LABEL_KEYS = ("name", "description", "isActive", "is_active")


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RecordValidationError(None, "Request body must be a JSON object")
    return data


def _contact_ids(data, key="contactIds"):
    raw = data.get(key)
    if not isinstance(raw, list):
        raise RecordValidationError(key, f"{key} must be a list of integers")
    try:
        return [int(value) for value in raw]
    except (TypeError, ValueError):
        raise RecordValidationError(key, f"{key} must be a list of integers") from None


def _optional_int(data, key):
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RecordValidationError(key, f"{key} must be an integer") from None


def _error(message, status, **extra):
    payload = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


def register_api_routes(app):
    """Register funnel API routes and their error mapping"""

    @app.errorhandler(NotFoundError)
    def handle_not_found(error):
        db.session.rollback()
        return _error(str(error), 404)

    @app.errorhandler(RecordValidationError)
    def handle_validation_error(error):
        db.session.rollback()
        return _error(error.message, 400, field=error.field)

    @app.errorhandler(PreconditionError)
    def handle_precondition_error(error):
        db.session.rollback()
        return _error(str(error), 400)

    @app.errorhandler(CSVAdapterError)
    def handle_csv_error(error):
        db.session.rollback()
        return _error(str(error), 400)

    @app.errorhandler(StageConflictError)
    def handle_stage_conflict(error):
        db.session.rollback()
        current_app.logger.warning(f"Stage conflict: {str(error)}")
        return _error(str(error), 409, participationId=error.participation_id)

    # ------------------------------------------------------------------
    # Contacts and ingestion
    # ------------------------------------------------------------------

    @app.route("/api/contacts/import", methods=["POST"])
    def api_import_contacts():
        """Bulk import from a multipart CSV upload or a JSON ``rows`` list."""
        pipeline = IngestionPipeline()
        upload = request.files.get("file")
        if upload is not None:
            context = IngestionContext.from_mapping(request.form.to_dict(), source="csv")
            stream = io.TextIOWrapper(upload.stream, encoding="utf-8-sig", newline="")
            current_app.logger.info(f"CSV import upload received: {upload.filename}")
            result = pipeline.ingest_csv(stream, context)
        else:
            data = _json_body()
            rows = data.get("rows")
            if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
                raise RecordValidationError("rows", "rows must be a list of objects")
            context = IngestionContext.from_mapping(data, source="api")
            result = pipeline.ingest_rows(rows, context)
        return jsonify(result.as_dict())

    @app.route("/api/contacts", methods=["POST"])
    def api_create_contact():
        """Manual entry of a single contact"""
        data = _json_body()
        context_data = data.get("context") if isinstance(data.get("context"), dict) else data
        record = {key: value for key, value in data.items() if key != "context" and key not in _CONTEXT_KEYS}
        context = IngestionContext.from_mapping(context_data, source="manual")
        outcome = IngestionPipeline().create_contact(record, context)
        return jsonify(outcome.as_dict()), 201 if outcome.created else 200

    @app.route("/api/contacts/<int:contact_id>", methods=["DELETE"])
    def api_delete_contact(contact_id):
        IdentityResolver().delete_contact(contact_id)
        return "", 204

    @app.route("/api/forms/<slug>/submit", methods=["POST"])
    def api_submit_form(slug):
        """Public intake-form submission"""
        data = request.get_json(silent=True)
        if data is None:
            data = request.form.to_dict()
        if not isinstance(data, dict):
            raise RecordValidationError(None, "Submission must be a JSON object")
        return jsonify(IngestionPipeline().submit_form(slug, data))

    # ------------------------------------------------------------------
    # Stage progression
    # ------------------------------------------------------------------

    @app.route("/api/participations/<int:participation_id>/stage", methods=["POST"])
    def api_set_stage(participation_id):
        data = _json_body()
        stage = data.get("stage")
        if stage is None or not str(stage).strip():
            raise RecordValidationError("stage", "Missing stage")
        force = bool(coerce_bool(data.get("force")))
        result = StageProgressionEngine().set_stage(participation_id, stage, force=force)
        return jsonify(result.as_dict())

    @app.route("/api/events/<int:event_id>/bulk-move", methods=["POST"])
    def api_bulk_move(event_id):
        data = _json_body()
        from_stage, to_stage = data.get("from"), data.get("to")
        if not from_stage or not to_stage:
            raise RecordValidationError("from" if not from_stage else "to", "Both from and to stages are required")
        if db.session.get(Event, event_id) is None:
            raise EventNotFoundError(event_id)
        result = StageProgressionEngine().bulk_move(event_id, from_stage, to_stage)
        return jsonify(result.as_dict())

    @app.route("/api/sends/<send_id>/advance", methods=["POST"])
    def api_advance_after_send(send_id):
        """Advance every recipient of a completed send"""
        data = _json_body()
        result = StageProgressionEngine().advance_after_send(
            send_id, _contact_ids(data), event_id=_optional_int(data, "eventId")
        )
        return jsonify(result.as_dict())

    @app.route("/api/sends/preview", methods=["POST"])
    def api_preview_send():
        data = _json_body()
        preview = StageProgressionEngine().preview_after_send(
            _contact_ids(data), event_id=_optional_int(data, "eventId")
        )
        return jsonify(preview)

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    @app.route("/api/segments", methods=["GET"])
    def api_list_segments():
        organization_id = _optional_int(request.args, "organizationId")
        if organization_id is None:
            raise RecordValidationError("organizationId", "Missing organizationId")
        include_inactive = coerce_bool(request.args.get("includeInactive")) is True
        segments = SegmentMaterializer().list_segments(organization_id, include_inactive=include_inactive)
        return jsonify({"segments": [segment.as_dict() for segment in segments]})

    @app.route("/api/segments", methods=["POST"])
    def api_create_segment():
        """Create a rule-based or manual segment"""
        data = _json_body()
        organization_id = _optional_int(data, "organizationId")
        if organization_id is None:
            raise RecordValidationError("organizationId", "Missing organizationId")
        contact_ids = _contact_ids(data) if data.get("contactIds") is not None else None
        segment = SegmentMaterializer().create_segment(organization_id, data, contact_ids=contact_ids)
        return jsonify(segment.as_dict()), 201

    @app.route("/api/segments/<int:segment_id>", methods=["PATCH"])
    def api_update_segment(segment_id):
        segment = SegmentMaterializer().update_segment(segment_id, _json_body())
        return jsonify(segment.as_dict())

    @app.route("/api/segments/<int:segment_id>", methods=["DELETE"])
    def api_delete_segment(segment_id):
        return jsonify(SegmentMaterializer().delete_segment(segment_id))

    @app.route("/api/segments/<int:segment_id>/stats", methods=["GET"])
    def api_segment_stats(segment_id):
        return jsonify(SegmentMaterializer().segment_stats(segment_id))

    @app.route("/api/segments/<int:segment_id>/members", methods=["GET"])
    def api_segment_members(segment_id):
        raw_flag = request.args.get("autoRefresh")
        auto_refresh = True if raw_flag is None else coerce_bool(raw_flag) is not False
        members = SegmentMaterializer().get_members(segment_id, auto_refresh=auto_refresh)
        return jsonify(members.as_dict())

    @app.route("/api/segments/<int:segment_id>/refresh", methods=["POST"])
    def api_segment_refresh(segment_id):
        result = SegmentMaterializer().populate(segment_id, trigger="api")
        return jsonify(result.as_dict())

    @app.route("/api/segments/<int:segment_id>/assign", methods=["POST"])
    def api_segment_assign(segment_id):
        data = _json_body()
        return jsonify(SegmentMaterializer().assign(segment_id, _contact_ids(data)))

    @app.route("/api/segments/preview", methods=["POST"])
    def api_segment_preview():
        """Count contacts matching criteria without saving a segment"""
        data = _json_body()
        organization_id = _optional_int(data, "organizationId")
        if organization_id is None:
            raise RecordValidationError("organizationId", "Missing organizationId")
        criteria = segment_fields({key: value for key, value in data.items() if key not in _SEGMENT_LABEL_KEYS})
        preview = SegmentMaterializer().preview(
            organization_id,
            event_id=criteria.get("event_id"),
            audience_type=criteria.get("audience_type"),
            stages=criteria.get("stages", []),
            tags=criteria.get("tags", []),
            engagement_tiers=criteria.get("engagement_tiers", []),
            scope=criteria.get("scope", SegmentScope.CONTACT),
        )
        return jsonify(preview)

    @app.route("/api/events/<int:event_id>/smart-lists", methods=["POST"])
    def api_create_event_smart_lists(event_id):
        segments = SegmentMaterializer().create_event_smart_lists(event_id)
        return jsonify({"segments": [segment.as_dict() for segment in segments]}), 201

    # ------------------------------------------------------------------
    # Event pipelines
    # ------------------------------------------------------------------

    @app.route("/api/events/<int:event_id>/pipeline", methods=["GET"])
    def api_event_pipeline(event_id):
        """Per-stage counts for an event funnel, optionally for one audience"""
        raw_audience = request.args.get("audienceType")
        audience = None
        if raw_audience:
            audience = resolve_audience(raw_audience)
            if audience is None:
                raise RecordValidationError("audienceType", f"Unknown audience {raw_audience!r}")
        return jsonify(SegmentMaterializer().pipeline_registry(event_id, audience))

    def _push(event_id, data, **targets):
        result = IngestionPipeline().push_contacts(
            event_id,
            audience_type=data.get("audienceType"),
            stage=data.get("stage"),
            **targets,
        )
        return jsonify(result.as_dict())

    @app.route("/api/events/<int:event_id>/pipeline/push", methods=["POST"])
    def api_push_contacts(event_id):
        data = _json_body()
        return _push(event_id, data, contact_ids=_contact_ids(data))

    @app.route("/api/events/<int:event_id>/pipeline/push-all", methods=["POST"])
    def api_push_all_contacts(event_id):
        return _push(event_id, _json_body())

    @app.route("/api/events/<int:event_id>/pipeline/push-by-tag", methods=["POST"])
    def api_push_contacts_by_tag(event_id):
        data = _json_body()
        tags = coerce_list(data.get("tags"))
        if not tags:
            raise RecordValidationError("tags", "tags must be a non-empty list")
        return _push(event_id, data, tags=tags)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    @app.route("/api/taxonomy", methods=["GET"])
    def api_taxonomy():
        payload = get_taxonomy().as_dict()
        payload["audienceTypes"] = [audience.value for audience in AudienceType]
        return jsonify(payload)

    @app.route("/api/fields/<target_type>", methods=["GET"])
    def api_fields(target_type):
        try:
            fields = describe_fields(target_type)
        except ValueError as e:
            return _error(str(e), 400)
        return jsonify({"targetType": target_type, "fields": fields})
