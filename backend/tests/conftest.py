"""Pytest fixtures: sqlite DB, API client, fake Gmail, fake timers."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ["REDIS_CONTENT_CACHE"] = "false"

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from priority_inbox.database import get_db
from priority_inbox.main import app
from priority_inbox.models import Base, User
from priority_inbox.services.prioritization_queue import PrioritizationScheduler, set_scheduler

from factories import FakeGmail, FakeTimers


@pytest.fixture
def db_engine(tmp_path):
    """File-based sqlite so pool threads and the test share one database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    u = User(email="owner@example.com", name="Owner")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def fake_timers():
    return FakeTimers()


@pytest.fixture
def fake_gmail():
    """Patch the Gmail calls the sync engine makes with an in-memory mailbox."""
    gmail = FakeGmail()
    target = "priority_inbox.services.inbox_sync"
    with patch(f"{target}.build_gmail_service", return_value=MagicMock()), \
            patch(f"{target}.service_for_current_thread", return_value=MagicMock()), \
            patch(f"{target}.list_threads", side_effect=gmail.list_threads), \
            patch(f"{target}.get_thread", side_effect=gmail.get_thread), \
            patch(f"{target}.list_history", side_effect=gmail.list_history), \
            patch(f"{target}.get_profile", side_effect=gmail.get_profile):
        yield gmail


@pytest.fixture
def client(session_factory, fake_timers):
    """TestClient on the test DB; the app's scheduler runs no batches and uses fake timers."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def make_scheduler(run_batch, count_deferred):
        return PrioritizationScheduler(MagicMock(), lambda user_id: 0, timer_factory=fake_timers)

    app.dependency_overrides[get_db] = override_get_db
    try:
        with patch("priority_inbox.main.SessionLocal", session_factory), \
                patch("priority_inbox.main.PrioritizationScheduler", side_effect=make_scheduler):
            with TestClient(app) as c:
                yield c
    finally:
        app.dependency_overrides.clear()
        set_scheduler(None)
