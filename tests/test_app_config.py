import json
import logging

from config.base import _coerce_bool, _coerce_int
from config.validation import validate_environment
from funnel_app.utils.logging_config import JSONFormatter, setup_logging


def test_non_production_environments_skip_validation():
    assert validate_environment("development") == (True, [])
    assert validate_environment("testing") == (True, [])


def test_production_requires_secrets_and_broker(monkeypatch, tmp_path):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)
    monkeypatch.setenv("FUNNEL_WORKER_ENABLED", "true")
    monkeypatch.setenv("FUNNEL_TAXONOMY_PATH", str(tmp_path / "missing.yaml"))

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert len(errors) == 4
    assert any("CELERY_BROKER_URL" in error for error in errors)
    assert any("FUNNEL_TAXONOMY_PATH" in error for error in errors)


def test_env_coercion_helpers():
    assert _coerce_bool("Yes") is True
    assert _coerce_bool("maybe", default=True) is True
    assert _coerce_int("0", 3, minimum=1) == 1
    assert _coerce_int("abc", 3) == 3


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("funnel", logging.INFO, __file__, 10, "Imported %s rows", (3,), None)
    record.funnel_task_id = "abc123"

    payload = json.loads(JSONFormatter(app_name="Event Funnel CRM", app_version="1.0.0").format(record))

    assert payload["message"] == "Imported 3 rows"
    assert payload["level"] == "INFO"
    assert payload["app"] == "Event Funnel CRM"
    assert payload["funnel_task_id"] == "abc123"


def test_setup_logging_is_idempotent(app, tmp_path):
    app.config.update(ENABLE_FILE_LOGGING=True, ENABLE_CONSOLE_LOGGING=True, LOG_DIR=str(tmp_path), LOG_FORMAT="json")

    setup_logging(app)
    first = len(app.logger.handlers)
    setup_logging(app)

    assert len(app.logger.handlers) == first
    assert (tmp_path / "funnel.log").exists()
    assert any(isinstance(handler.formatter, JSONFormatter) for handler in app.logger.handlers)
