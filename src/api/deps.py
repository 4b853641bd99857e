"""Shared FastAPI dependencies.

Identity is owned by an upstream collaborator (gateway or session
layer) that forwards the authenticated user id in the X-User-Id header;
this service trusts it as-is.
"""

import logging

from fastapi import Header

from src.errors import AuthError
from src.services.generation_orchestrator import GenerationOrchestrator
from src.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

_orchestrator: GenerationOrchestrator | None = None


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the calling user from the X-User-Id header.

    Raises:
        AuthError: If the header is missing or blank.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthError("Missing X-User-Id header")
    return user_id


def get_orchestrator() -> GenerationOrchestrator:
    """Process-wide orchestrator, created on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GenerationOrchestrator()
        logger.info("Generation orchestrator initialized")
    return _orchestrator


def get_usage_recorder() -> UsageRecorder:
    return UsageRecorder()


async def shutdown_orchestrator() -> None:
    """Cancel in-flight generations and drop the singleton (app shutdown)."""
    global _orchestrator
    if _orchestrator is None:
        return
    orchestrator, _orchestrator = _orchestrator, None
    await orchestrator.shutdown()
