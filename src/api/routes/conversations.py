"""API routes for reading conversations and following a generation.

The SSE stream polls the database for the assistant message being
written and emits a snapshot whenever it changes, then a final 'done'
event once the conversation's generating flag clears. Snapshots are
cumulative, so a client that misses one loses nothing.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from src.api.deps import get_user_id
from src.api.schemas import ConversationDetailResponse, ConversationListResponse
from src.db.connection import get_db, get_db_context
from src.db.models import MessageRole
from src.errors import NotFoundError
from src.services.conversation_persistence_service import (
    ConversationPersistenceService,
    conversation_to_dict,
    message_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])

POLL_INTERVAL_SECONDS = 0.25
PING_INTERVAL_SECONDS = 15.0


@router.get("", response_model=ConversationListResponse)
def list_conversations(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """List the caller's conversations, most recently updated first."""
    svc = ConversationPersistenceService(db)
    return {"conversations": [conversation_to_dict(c) for c in svc.list_conversations(user_id)]}


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Return a conversation with all of its messages."""
    result = ConversationPersistenceService(db).get_conversation_with_messages(
        conversation_id, user_id
    )
    if result is None:
        raise NotFoundError("Conversation", conversation_id)
    return result


def _poll_snapshot(conversation_id: str) -> tuple[bool, dict[str, Any] | None]:
    """Current generating flag and the latest assistant message."""
    with get_db_context() as db:
        svc = ConversationPersistenceService(db)
        conversation = svc.get_conversation(conversation_id)
        if conversation is None:
            return False, None
        latest = next(
            (
                m for m in reversed(svc.get_messages(conversation_id))
                if m.role == MessageRole.assistant.value
            ),
            None,
        )
        return conversation.generating, message_to_dict(latest) if latest else None


async def _snapshot_generator(
    request: Request, conversation_id: str
) -> AsyncIterator[dict[str, str]]:
    last_stamp: tuple[str, int] | None = None
    idle = 0.0
    while True:
        if await request.is_disconnected():
            logger.debug("SSE client for %s disconnected", conversation_id)
            return

        generating, message = _poll_snapshot(conversation_id)
        if message is not None:
            stamp = (message["updated_at"], len(message["content"] or ""))
            if stamp != last_stamp:
                last_stamp = stamp
                idle = 0.0
                yield {"event": "message", "data": json.dumps(message)}

        if not generating:
            yield {"event": "done", "data": json.dumps({"conversation_id": conversation_id})}
            return

        await asyncio.sleep(POLL_INTERVAL_SECONDS)
        idle += POLL_INTERVAL_SECONDS
        if idle >= PING_INTERVAL_SECONDS:
            idle = 0.0
            yield {"event": "ping", "data": "{}"}


@router.get("/{conversation_id}/stream")
async def stream_conversation(
    request: Request,
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> EventSourceResponse:
    """Stream assistant message snapshots via Server-Sent Events.

    Raises:
        NotFoundError: Unknown conversation or owned by another user.
    """
    if ConversationPersistenceService(db).get_conversation(conversation_id, user_id) is None:
        raise NotFoundError("Conversation", conversation_id)

    return EventSourceResponse(
        _snapshot_generator(request, conversation_id),
        media_type="text/event-stream",
    )
