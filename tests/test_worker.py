import json
from datetime import timedelta
from typing import Any, Dict

from flask import Flask

from funnel_app import get_celery_app, init_funnel
from funnel_app.celery_app import DEFAULT_QUEUE_NAME, REFRESH_STALE_TASK, create_celery_app
from funnel_app.models import Contact, Participation, Stage, db


def build_funnel_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the funnel extension for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True)
    app.config.update(overrides)
    init_funnel(app)
    return app


EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_funnel_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_beat_schedules_smart_list_refresh(tmp_path):
    app = build_funnel_app(
        CELERY_SQLITE_PATH=str(tmp_path / "beat.sqlite"),
        FUNNEL_SMART_LIST_REFRESH_SECONDS=90,
    )

    schedule = get_celery_app(app).conf.beat_schedule["refresh-stale-smart-lists"]

    assert schedule["task"] == REFRESH_STALE_TASK
    assert schedule["schedule"] == timedelta(seconds=90)


def test_get_celery_app_without_extension():
    assert get_celery_app(Flask(__name__)) is None


def test_worker_ping_cli(tmp_path):
    app = build_funnel_app(
        FUNNEL_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "ping.sqlite"),
        CELERY_CONFIG=EAGER,
    )

    runner = app.test_cli_runner()
    with app.app_context():
        result = runner.invoke(args=["funnel", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(tmp_path, monkeypatch):
    app = build_funnel_app(
        FUNNEL_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "run.sqlite"),
        CELERY_CONFIG=EAGER,
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    with app.app_context():
        result = runner.invoke(
            args=["funnel", "worker", "run", "--loglevel", "debug", "--pool", "solo", "--queues", "imports", "--beat"]
        )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "debug", "-Q", "imports", "--pool", "solo", "--beat"]


def test_queued_tasks_run_against_the_database(app, organization, event, make_contact, make_participation, tmp_path):
    app.config.update(CELERY_SQLITE_PATH=str(tmp_path / "tasks.sqlite"), CELERY_CONFIG=EAGER)
    celery_app = create_celery_app(app)
    csv_path = tmp_path / "queued.csv"
    csv_path.write_text("first_name,last_name,email\nQueued,Person,queued@example.org\n", encoding="utf-8")

    imported = celery_app.tasks["funnel.ingest.csv"].apply(
        kwargs={"file_path": str(csv_path), "context": {"organizationId": organization.id}, "keep_file": False}
    ).get()

    assert imported["created"] == 1
    assert not csv_path.exists()
    assert Contact.find_by_email("queued@example.org") is not None

    contact = make_contact("sent@example.org")
    participation = make_participation(contact, event, stage=Stage.PAID)
    advanced = celery_app.tasks["funnel.progression.advance_after_send"].apply(
        kwargs={"send_id": "s-1", "contact_ids": [contact.id], "event_id": event.id}
    ).get()

    assert advanced == {"sendId": "s-1", "moved": 1, "skipped": 0, "total": 1}
    assert db.session.get(Participation, participation.id).current_stage is Stage.THANKED_PAID

    refreshed = celery_app.tasks[REFRESH_STALE_TASK].apply(kwargs={"threshold_minutes": 5}).get()
    assert refreshed == {"refreshed": [], "count": 0}
