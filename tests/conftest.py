"""
Shared pytest fixtures for the ProgramHub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - program: Pre-created Program via the API
    - wizard_payload: A complete wizard submission (two activities, three tasks)
"""

import copy

import pytest

from programhub import create_app
from programhub.models import db as _db


LITERACY_PAYLOAD = {
    "program": {
        "name": "Literacy 2025",
        "description": "Adult and youth literacy across Migori",
        "year": "2025",
        "status": "planned",
        "budget_total": "500000",
        "focus_area": "Survivor Empowerment",
        "location": "Migori County",
        "strategic_objective": "Raise adult literacy by 20%",
    },
    "activities": [
        {
            "name": "Training",
            "description": "Train community facilitators",
            "outcome": "40 facilitators certified",
            "kpi": "Facilitators certified",
            "timeline_start": "2025-01-15",
            "timeline_end": "2025-03-31",
            "budget_allocated": "120000",
            "status": "planned",
            "responsible_person": "A. Otieno",
            "tasks": [
                {"name": "Recruit facilitators", "target": "40", "budget": "10000"},
                {"name": "Deliver workshop", "target": "3", "activity_timeline": "2025-02-10"},
                {"name": "Certify facilitators", "target": "40", "status": "2"},
            ],
        },
        {
            "name": "Outreach",
            "description": "Door-to-door enrolment drive",
            "outcome": "500 learners enrolled",
            "kpi": "Learners enrolled",
            "timeline_start": "2025-04-01",
            "timeline_end": "2025-06-30",
            "budget_allocated": "80000",
            "tasks": [],
        },
    ],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def wizard_payload():
    """A fresh deep copy of the Literacy 2025 wizard submission."""
    return copy.deepcopy(LITERACY_PAYLOAD)


@pytest.fixture()
def program(client):
    """Create and return a test Program via the API."""
    res = client.post("/api/v1/programs", json={
        "name": "Test Program",
        "description": "Fixture program",
        "year": 2025,
        "status": "active",
        "budget_total": 1000,
        "focus_area": "GBV Management",
    })
    assert res.status_code == 201
    return res.get_json()
