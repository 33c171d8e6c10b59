# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from config.taxonomy import configure_taxonomy  # noqa: E402
from funnel_app.models import (  # noqa: E402
    AudienceType,
    Contact,
    Event,
    IntakeForm,
    Organization,
    Participation,
    ResponseBag,
    Stage,
    db,
)


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application with a fresh schema"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "FUNNEL_STALE_THRESHOLD_MINUTES": 5,
            "FUNNEL_STAGE_CAS_RETRIES": 3,
            "FUNNEL_INGEST_CHUNK_SIZE": 200,
            "FUNNEL_WORKER_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
        }
    )

    # Re-initialize logging with updated config
    from funnel_app.utils.logging_config import setup_logging

    setup_logging(flask_app)
    # Tests that install a custom taxonomy must not leak it
    configure_taxonomy(None)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    configure_taxonomy(None)


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner"""
    return app.test_cli_runner()


@pytest.fixture
def organization(app):
    """Create a test organization"""
    org = Organization(name="Riverside Chapter", slug="riverside", description="Test chapter")
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def other_organization(app):
    org = Organization(name="Hilltop Chapter", slug="hilltop")
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def event(app, organization):
    """Create a test event for the organization"""
    evt = Event(organization_id=organization.id, title="Spring Gala", slug="spring-gala")
    db.session.add(evt)
    db.session.commit()
    return evt


@pytest.fixture
def intake_form(app, organization, event):
    form = IntakeForm(
        slug="gala-signup",
        title="Gala Signup",
        organization_id=organization.id,
        event_id=event.id,
        audience_type=AudienceType.ORG_MEMBERS,
        target_stage=None,
    )
    db.session.add(form)
    db.session.commit()
    return form


@pytest.fixture
def make_contact(app, organization):
    """Factory creating contacts attached to the test organization"""

    def _make(email, first_name="Test", last_name="Person", **fields):
        fields.setdefault("organization_id", organization.id)
        contact = Contact(email=email, first_name=first_name, last_name=last_name, **fields)
        db.session.add(contact)
        db.session.commit()
        return contact

    return _make


@pytest.fixture
def make_participation(app):
    """Factory creating a participation at a given stage"""

    def _make(contact, event=None, stage=Stage.IN_FUNNEL, audience=AudienceType.ORG_MEMBERS, **fields):
        participation = Participation(
            contact_id=contact.id,
            event_id=event.id if event is not None else None,
            audience_type=audience,
            current_stage=stage,
            responses=fields.pop("responses", ResponseBag()),
            **fields,
        )
        db.session.add(participation)
        db.session.commit()
        return participation

    return _make
