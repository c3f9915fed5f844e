"""
Test configuration and fixtures for the export service.

- Throwaway SQLite database per test (or TEST_DATABASE_URL)
- Every module-level SessionLocal bound to the test database
- In-memory Dramatiq StubBroker and an optional stub worker
- Export artifacts written under pytest's tmp_path
- TestClient with database dependency override and session-cookie auth
"""

import os
import tempfile

# Must be set before app modules read settings
os.environ.setdefault("EXPORT_BROKER", "stub")
os.environ.setdefault("EXPORT_REAPER_ENABLED", "false")
os.environ.setdefault("EXPORT_RETRY_BACKOFF_MS", "10")
os.environ.setdefault("EXPORT_DIR", tempfile.mkdtemp(prefix="exports-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import secrets
from datetime import datetime, timedelta, timezone
from typing import Generator
from unittest.mock import MagicMock

import dramatiq
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models import User, Session as UserSession
from app.services import export_renderers
from app.services.file_service import ArtifactStorage
from app.services.notifier import Notifier
from app.workers import broker as export_broker
from tests.factories import create_user


# =============================================================================
# Database Fixtures
# =============================================================================


def get_test_database_url(tmp_path) -> str:
    """
    Get the test database URL.

    Priority:
    1. TEST_DATABASE_URL environment variable
    2. SQLite file under the test's tmp_path (shared by worker threads)
    """
    if os.environ.get("TEST_DATABASE_URL"):
        return os.environ["TEST_DATABASE_URL"]
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def test_engine(tmp_path):
    """Create a fresh schema for each test and drop it afterwards."""
    database_url = get_test_database_url(tmp_path)
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)

    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine, monkeypatch):
    """
    Session factory bound to the test database.

    Patched into every module that opens its own sessions (worker,
    renderers, reaper, CLI) so background code sees the test data.
    """
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    for target in (
        "app.workers.export_worker.SessionLocal",
        "app.services.export_renderers.SessionLocal",
        "app.services.expiry_reaper.SessionLocal",
        "app.cli.SessionLocal",
    ):
        monkeypatch.setattr(target, factory)
    return factory


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Database session for the test body and the API."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Export Pipeline Fixtures
# =============================================================================


@pytest.fixture
def storage(tmp_path, monkeypatch) -> ArtifactStorage:
    """Artifact storage under tmp_path, used by every pipeline component."""
    test_storage = ArtifactStorage(export_dir=str(tmp_path / "exports"))
    for target in (
        "app.workers.export_worker.artifact_storage",
        "app.services.export_service.artifact_storage",
        "app.services.expiry_reaper.artifact_storage",
    ):
        monkeypatch.setattr(target, test_storage)
    return test_storage


@pytest.fixture
def notifier(monkeypatch) -> MagicMock:
    """Mock notifier returned by get_notifier()."""
    mock = MagicMock(spec=Notifier)
    mock.send_export_ready.return_value = True
    monkeypatch.setattr("app.workers.export_worker.get_notifier", lambda: mock)
    return mock


@pytest.fixture
def renderers():
    """
    Snapshot the renderer registry and restore it after the test.

    Tests may register or replace renderers freely.
    """
    saved = dict(export_renderers._registry)
    yield export_renderers
    export_renderers._registry.clear()
    export_renderers._registry.update(saved)


@pytest.fixture
def stub_broker():
    """The in-memory Dramatiq broker, emptied before and after each test."""
    export_broker.flush_all()
    yield export_broker
    export_broker.flush_all()


@pytest.fixture
def stub_worker(stub_broker, session_factory, storage, notifier):
    """A running Dramatiq worker consuming the stub broker."""
    worker = dramatiq.Worker(stub_broker, worker_timeout=100, worker_threads=1)
    worker.start()
    yield worker
    worker.stop()


# =============================================================================
# TestClient Fixtures
# =============================================================================


@pytest.fixture
def client(db: Session, storage, stub_broker) -> Generator[TestClient, None, None]:
    """
    TestClient with database dependency override.

    The database session is injected into the app's get_db dependency.
    """

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close - managed by db fixture

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        # Same-host Referer so the session origin check lets writes through
        test_client.headers["referer"] = "http://testserver/"
        yield test_client

    app.dependency_overrides.clear()


# =============================================================================
# Authentication Fixtures
# =============================================================================


@pytest.fixture
def test_user(db: Session) -> User:
    """Create a test user."""
    return create_user(db, email="testuser@example.com", name="Test User")


@pytest.fixture
def other_user(db: Session) -> User:
    """Create a second user who owns nothing."""
    return create_user(db, email="other@example.com", name="Other User")


@pytest.fixture
def test_session(db: Session, test_user: User) -> UserSession:
    """Create a login session for the test user."""
    session = UserSession(
        user_id=test_user.id,
        token=secrets.token_urlsafe(32),
        expires_at=datetime.now(timezone.utc) + timedelta(days=7),
        user_agent="pytest-test-client",
        ip_address="127.0.0.1",
    )
    db.add(session)
    db.commit()
    return session


@pytest.fixture
def auth_client(client: TestClient, test_session: UserSession) -> TestClient:
    """TestClient carrying the test user's session cookie."""
    client.cookies.set(settings.session_cookie_name, test_session.token)
    return client


# =============================================================================
# pytest markers
# =============================================================================


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m not slow')"
    )
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
