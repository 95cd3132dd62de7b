"""Shared test fixtures for the estate CRM test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: an admin and two agents
- bus / events: a sync bus and a recorder of everything published on it
- make_engine: AutomationEngine acting as a given user at a fixed time
"""

from datetime import datetime, timezone

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from app.extensions import db as _db
from app.models.user import User
from app.services.automation import AutomationEngine
from app.services.entity_store import EntityStore
from app.services.event_bus import TOPICS, SyncEventBus

FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def _make_user(db_session, email, password, full_name, is_admin=False):
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name,
        is_admin=is_admin,
    )
    db_session.add(user)
    db_session.flush()
    return user


@pytest.fixture
def seed_data(db_session):
    """An admin and two agents. Passwords are <name>123."""
    admin = _make_user(db_session, "admin@estate.local", "admin123", "Admin User", is_admin=True)
    agent = _make_user(db_session, "sara@estate.local", "sara123", "Sara Agent")
    other = _make_user(db_session, "omar@estate.local", "omar123", "Omar Agent")
    db_session.commit()

    # Plain IDs so tests can use them after the objects expire.
    return {
        "admin": admin,
        "admin_id": admin.id,
        "agent": agent,
        "agent_id": agent.id,
        "other": other,
        "other_id": other.id,
    }


@pytest.fixture
def fixed_now():
    """The engine clock. SQLite hands datetimes back naive, so compare with
    fixed_now.replace(tzinfo=None)."""
    return FIXED_NOW


@pytest.fixture
def bus():
    return SyncEventBus()


@pytest.fixture
def events(bus):
    """List of (topic, payload) for everything published on ``bus``."""
    received = []
    for topic in TOPICS:
        bus.subscribe(topic, lambda payload, topic=topic: received.append((topic, payload)))
    return received


@pytest.fixture
def make_engine(app, db_session, bus):
    """Build an engine acting as ``user_id`` with a frozen clock."""

    def _make(user_id, is_admin=False, now=FIXED_NOW):
        return AutomationEngine(
            store=EntityStore(db_session),
            bus=bus,
            actor_provider=lambda: (user_id, is_admin),
            clock=lambda: now,
            config=app.config,
        )

    return _make


@pytest.fixture
def engine(make_engine, seed_data):
    """Engine acting as the first agent."""
    return make_engine(seed_data["agent_id"])


@pytest.fixture
def admin_engine(make_engine, seed_data):
    return make_engine(seed_data["admin_id"], is_admin=True)
