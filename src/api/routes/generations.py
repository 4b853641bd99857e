"""API routes for triggering and cancelling generations."""

import logging

from fastapi import APIRouter, Depends

from src.api.deps import get_orchestrator, get_user_id
from src.api.schemas import CancelResponse
from src.services.generation_orchestrator import (
    GenerateRequest,
    GenerateResponse,
    GenerationOrchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generations", tags=["generations"])


@router.post("", status_code=202, response_model=GenerateResponse)
async def start_generation(
    payload: GenerateRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerateResponse:
    """Start an assistant turn.

    Returns as soon as the response is streaming in the background;
    clients follow progress on /conversations/{id}/stream.
    """
    return await orchestrator.start_generation(user_id, payload)


@router.post("/{conversation_id}/cancel", response_model=CancelResponse)
async def cancel_generation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    """Stop a running generation. A finished or unknown one is a no-op."""
    cancelled = orchestrator.cancel_generation(conversation_id, user_id=user_id)
    return CancelResponse(cancelled=cancelled, conversation_id=conversation_id)
