"""In-process registry of active generations.

Tracks one GenerationHandle per conversation id. A handle is added only
together with a successful database claim of the conversation's
generating flag, both under the registry lock, so two concurrent
triggers for the same conversation can never both proceed.

Not designed for multi-process deployment: the registry lives in the
event loop of a single worker.

Example:
    registry = GenerationRegistry()
    handle = await registry.claim("conv-123", persist_claim=lambda: True)
    registry.cancel("conv-123")
    registry.release("conv-123", handle)
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.errors import ConflictError
from src.providers.config import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class GenerationHandle:
    """A single active generation.

    Attributes:
        conversation_id: Conversation being generated for.
        message_id: Assistant message receiving the output (set once created).
        token: Cooperative cancellation signal checked once per chunk.
        task: Background streaming task (set once spawned).
        started_at: When the slot was claimed.
    """

    conversation_id: str
    message_id: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task[Any] | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def elapsed_ms(self) -> int:
        return int((datetime.now(UTC) - self.started_at).total_seconds() * 1000)


class GenerationRegistry:
    """Maps conversation id to its active GenerationHandle."""

    def __init__(self) -> None:
        self._handles: dict[str, GenerationHandle] = {}
        self._lock = asyncio.Lock()

    async def claim(
        self, conversation_id: str, persist_claim: Callable[[], bool]
    ) -> GenerationHandle:
        """Register a generation for a conversation.

        Args:
            conversation_id: Conversation to claim.
            persist_claim: Sets the durable generating flag; returns False
                when the flag was already set. Runs under the registry lock.

        Returns:
            The new handle.

        Raises:
            ConflictError: The conversation already has an active generation.
        """
        async with self._lock:
            if conversation_id in self._handles:
                raise ConflictError(
                    f"Conversation '{conversation_id}' is already generating"
                )
            if not persist_claim():
                raise ConflictError(
                    f"Conversation '{conversation_id}' is already generating"
                )
            handle = GenerationHandle(conversation_id=conversation_id)
            self._handles[conversation_id] = handle
            logger.debug("Claimed generation slot for %s", conversation_id)
            return handle

    def release(self, conversation_id: str, handle: GenerationHandle | None = None) -> None:
        """Remove a conversation's handle. Idempotent.

        When handle is given, only that exact handle is removed, so a late
        cleanup cannot evict a newer generation.
        """
        current = self._handles.get(conversation_id)
        if current is None:
            return
        if handle is not None and current is not handle:
            return
        del self._handles[conversation_id]
        logger.debug("Released generation slot for %s", conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        """Signal cancellation for a conversation's generation.

        Returns:
            True if an active generation was signalled; False (no-op) when
            the conversation is unknown or already finished.
        """
        handle = self._handles.get(conversation_id)
        if handle is None:
            return False
        handle.token.cancel()
        logger.info(
            "Cancellation requested for conversation %s after %dms",
            conversation_id, handle.elapsed_ms,
        )
        return True

    def get(self, conversation_id: str) -> GenerationHandle | None:
        return self._handles.get(conversation_id)

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._handles

    def active_ids(self) -> list[str]:
        return list(self._handles.keys())

    def __len__(self) -> int:
        return len(self._handles)


class TaskSupervisor:
    """Owns fire-and-forget background tasks.

    Holds a strong reference to every spawned task until it finishes and
    logs any exception the task did not handle itself.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def wait_all(self, timeout: float | None = None) -> None:
        """Wait for every supervised task, including ones spawned meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                break

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Wait briefly for tasks to finish, then cancel the stragglers."""
        await self.wait_all(timeout=timeout)
        stragglers = list(self._tasks)
        for task in stragglers:
            task.cancel()
        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)
            logger.warning("Cancelled %d background task(s) at shutdown", len(stragglers))

    def __len__(self) -> int:
        return len(self._tasks)
