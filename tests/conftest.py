"""
Test configuration and fixtures.

Every test gets its own file-backed SQLite database so connections opened from
worker threads see the same data.
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="newsletter-tests-")

# Set test environment variables before the application modules are imported
os.environ.update({
    "DATABASE_URL": f"sqlite:///{_TEST_DB_DIR}/app.db",
    "ENVIRONMENT": "test",
    "ENABLE_BACKGROUND_WORKERS": "false",
    "ENABLE_CELERY": "false",
    "EMAIL_BASE_URL": "http://email.test",
    "EMAIL_SENDER": "newsletter@example.com",
    "EMAIL_AUTHORIZATION_TOKEN": "test-token",
    "OBS_REDACT_PII": "true",
    "ALLOWED_ORIGINS": "http://localhost:3000",
})

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from newsletter.database import create_db_engine, get_db, get_session_factory, init_db
from newsletter.main import app
from newsletter.services.email_client import EmailClient, get_email_client
from newsletter.services.idempotency import IdempotencyStore
from tests.factories import SubscriptionFactory


@pytest.fixture
def engine(tmp_path):
    """Fresh database with all tables created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'newsletter.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory):
    return IdempotencyStore(session_factory)


@pytest.fixture
def mock_email_client():
    """Email client stand-in for endpoints that send mail."""
    return AsyncMock(spec=EmailClient)


@pytest.fixture
def client(session_factory, mock_email_client):
    """Create test client wired to the per-test database and a mocked email API."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_client] = lambda: mock_email_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def add_subscribers(db_session):
    """Persist subscriptions built by SubscriptionFactory."""
    def _add(count=1, **kwargs):
        subscriptions = SubscriptionFactory.build_batch(count, **kwargs)
        db_session.add_all(subscriptions)
        db_session.commit()
        return subscriptions
    return _add


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model in a fresh session."""
    def _count(model):
        session = session_factory()
        try:
            return session.execute(select(func.count()).select_from(model)).scalar_one()
        finally:
            session.close()
    return _count


@pytest.fixture
def account_headers():
    return {"X-Account-Id": "account-1", "X-Request-Id": "req-fixed"}
