"""
Contact funnel engine.

``init_funnel`` wires the engine into a Flask app: the process-wide stage
taxonomy, the ``flask funnel`` CLI group and the Celery worker. State lives
in ``app.extensions['funnel']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from config.taxonomy import configure_taxonomy, load_taxonomy

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import funnel_cli

__all__ = ["EXTENSION_KEY", "get_celery_app", "init_funnel"]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "worker_enabled": False,
            "celery_app": None,
            "taxonomy": None,
        },
    )


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when running tests
    if funnel_cli.name in app.cli.commands:
        app.cli.commands.pop(funnel_cli.name)
    app.cli.add_command(funnel_cli)


def init_funnel(app: Flask) -> None:
    """
    Install the taxonomy, CLI and worker for ``app``.

    ``FUNNEL_TAXONOMY_PATH`` in the app config takes precedence over the
    environment variable of the same name.
    """
    state = _ensure_extension_state(app)
    taxonomy_path = app.config.get("FUNNEL_TAXONOMY_PATH")
    taxonomy = load_taxonomy({"FUNNEL_TAXONOMY_PATH": taxonomy_path} if taxonomy_path else {})
    configure_taxonomy(taxonomy)
    state["taxonomy"] = taxonomy

    worker_enabled = bool(app.config.get("FUNNEL_WORKER_ENABLED", False))
    state["worker_enabled"] = worker_enabled
    if worker_enabled:
        ensure_celery_app(app, state)

    _set_cli(app)
    app.logger.info(
        "Funnel engine initialised (worker_enabled=%s, taxonomy=%s)",
        worker_enabled,
        taxonomy_path or "built-in",
    )
