"""Shared fixtures: encryption key, in-memory database, credential store."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledgerbridge.db_base import Base
from ledgerbridge.credentials.locks import RefreshLockRegistry
from ledgerbridge.credentials.store import CredentialStore

TEST_ENCRYPTION_KEY = "test-ledgerbridge-encryption-key-32!"


@pytest.fixture
def encryption_key(monkeypatch):
    """Set up encryption key for testing."""
    monkeypatch.delenv("SESSION_SECRET", raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def db_engine(encryption_key):
    """In-memory SQLite shared across threads (TestClient runs the app in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    import ledgerbridge.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(db_engine):
    """Create in-memory SQLite database session for testing."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def store(db_session):
    return CredentialStore(db_session)


@pytest.fixture
def lock_registry():
    """In-process locks only."""
    return RefreshLockRegistry(lock_timeout=5)


