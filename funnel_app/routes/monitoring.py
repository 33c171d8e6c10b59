# funnel_app/routes/monitoring.py

"""
Health and Prometheus endpoints
"""

from flask import current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from funnel_app.models import db


def register_monitoring_routes(app):
    """Register health check and metrics routes"""

    @app.route(app.config.get("HEALTH_CHECK_ENDPOINT", "/health"), methods=["GET"])
    def health_check():
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            current_app.logger.error(f"Health check database error: {str(e)}")
            return jsonify({"status": "unhealthy", "database": "unavailable"}), 503
        return jsonify(
            {
                "status": "ok",
                "database": "ok",
                "version": current_app.config.get("APP_VERSION"),
            }
        )

    @app.route(app.config.get("METRICS_ENDPOINT", "/metrics"), methods=["GET"])
    def metrics():
        return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}
