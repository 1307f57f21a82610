"""Pytest configuration and shared fixtures."""

import os

# Must be set before docgate.db.session creates its engine
os.environ.setdefault("DOCGATE_DATABASE_URL", "sqlite://")

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docgate.db.base import Base
import docgate.db.models  # noqa: F401  (register tables)
from docgate.core.policy.rules import Actor
from docgate.core.workflow_config import LadderConfig, WorkflowConfig


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with the full schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Database session bound to the test engine."""
    TestingSession = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def workflow_config():
    """Default ladder: mgmt always, exec from 100000."""
    return WorkflowConfig(defaults=LadderConfig())


@pytest.fixture
def submitter():
    return Actor(user_id="user-1", roles=["member"], group_ids=["sales"])


@pytest.fixture
def manager():
    return Actor(user_id="mgr-1", roles=["manager"], group_ids=["mgmt"])


@pytest.fixture
def executive():
    return Actor(user_id="exec-1", roles=["executive"], group_ids=["exec"])


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", roles=["admin"], group_ids=["mgmt"])


@pytest.fixture
def client(db_session):
    """FastAPI test client using the test database session."""
    from fastapi.testclient import TestClient

    from docgate.api.deps import get_db
    from docgate.api.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build bearer headers for an actor."""
    from docgate.core.security import create_actor_token

    def _headers(actor: Actor):
        token = create_actor_token(actor, expires_delta=timedelta(minutes=5))
        return {"Authorization": f"Bearer {token}"}

    return _headers
