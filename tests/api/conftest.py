"""Pytest fixtures for API tests.

The client never enters the app lifespan, so init_db() and startup
recovery do not touch the real data directory. Routes that open their
own sessions through get_db_context() are pointed at the test engine.
"""

from collections.abc import Callable, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from src.api.deps import get_orchestrator, get_usage_recorder
from src.api.main import app
from src.db.connection import get_db
from src.db.models import Conversation, Message
from src.services.usage_recorder import UsageRecorder

USER_HEADERS = {"X-User-Id": "user-1"}


@pytest.fixture
def test_db(db_session: Session) -> Session:
    return db_session


@pytest.fixture
def orchestrator() -> MagicMock:
    """Orchestrator double; route tests only check the HTTP contract."""
    mock = MagicMock()
    mock.start_generation = AsyncMock()
    mock.cancel_generation.return_value = True
    return mock


@pytest.fixture
def client(
    test_db: Session, db_context: Callable, orchestrator: MagicMock, monkeypatch
) -> Generator[TestClient, None, None]:
    """TestClient with database, orchestrator and usage dependencies overridden."""

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_usage_recorder] = lambda: UsageRecorder(db_context)
    monkeypatch.setattr("src.api.main.get_db_context", db_context)
    monkeypatch.setattr("src.api.routes.conversations.get_db_context", db_context)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def headers() -> dict[str, str]:
    return dict(USER_HEADERS)


@pytest.fixture
def sample_conversation(test_db: Session) -> Conversation:
    """A finished conversation owned by user-1 with one exchange."""
    conversation = Conversation(
        id="conv-1",
        user_id="user-1",
        title="Trip planning",
        vendor="openai",
        model_id="gpt-4.1-mini",
    )
    test_db.add(conversation)
    test_db.add_all([
        Message(
            id="msg-1", conversation_id="conv-1", role="user",
            content="Plan a trip", sequence=1,
        ),
        Message(
            id="msg-2", conversation_id="conv-1", role="assistant",
            content="Day one: arrive.", sequence=2,
            vendor="openai", model_id="gpt-4.1-mini", finish_reason="stop",
        ),
    ])
    test_db.commit()
    return conversation
