"""Shared pytest fixtures for EventDesk."""

from __future__ import annotations

import sys
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventdesk import api, database, storage
from eventdesk.crud import create_event, create_profile
from eventdesk.models import Base, Event, Profile
from eventdesk.utils import utcnow

COMPLETE_PROFILE = {
    "full_name": "Ada Lovelace",
    "phone": "+15550100",
    "institution": "Analytical Society",
    "position": "Engineer",
    "city": "London",
}


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = database.create_db_engine(
        "sqlite+pysqlite:///:memory:", poolclass=StaticPool
    )
    session_factory = database.create_session_factory(engine)
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def file_db(monkeypatch, tmp_path):
    """File-backed SQLite so concurrent threads hold separate connections."""

    engine = database.create_db_engine(
        f"sqlite+pysqlite:///{tmp_path / 'concurrency.sqlite'}"
    )
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", database.create_session_factory(engine))
    yield engine
    engine.dispose()


@pytest.fixture()
def make_profile():
    """Create a committed profile; complete unless fields are overridden."""

    def _make(role: str = "participant", **overrides) -> Profile:
        fields = {**COMPLETE_PROFILE, **overrides}
        email = fields.pop("email", None) or f"user-{uuid.uuid4().hex[:10]}@example.com"
        with database.get_session() as session:
            return create_profile(session, email=email, role=role, **fields)

    return _make


@pytest.fixture()
def make_event(make_profile):
    """Create a committed event owned by ``organizer`` (a new one by default)."""

    def _make(
        *,
        organizer: Profile | None = None,
        capacity: int | None = None,
        status: str = "published",
        title: str = "Data Science Bootcamp",
        end_time=None,
    ) -> Event:
        organizer = organizer or make_profile(role="organizer")
        start = utcnow().replace(microsecond=0) + timedelta(days=3)
        with database.get_session() as session:
            return create_event(
                session,
                organizer=session.get(Profile, organizer.id),
                title=title,
                start_time=start,
                end_time=end_time or start + timedelta(hours=2),
                location="Main Hall",
                capacity=capacity,
                status=status,
            )

    return _make
