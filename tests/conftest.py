"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite engine, session and a get_db_context() stand-in
- A fixed credential encryption key so no test touches the user's key file
"""

import base64
from collections.abc import Callable, Generator
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.db.models import Base

TEST_CREDENTIAL_KEY = bytes(range(32))


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def credential_key_env(monkeypatch) -> bytes:
    """Pin the credential key to a known value for every test."""
    monkeypatch.setenv(
        "KEPLER_CREDENTIAL_KEY", base64.b64encode(TEST_CREDENTIAL_KEY).decode("ascii")
    )
    monkeypatch.delenv("KEPLER_CREDENTIAL_KEY_FILE", raising=False)
    return TEST_CREDENTIAL_KEY


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared by every session of one test."""
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Create a session for one test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def db_context(session_factory: sessionmaker) -> Callable:
    """Drop-in replacement for get_db_context() bound to the test engine."""

    @contextmanager
    def _context() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _context
