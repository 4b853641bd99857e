"""Tests for the in-process generation registry and task supervisor."""

import asyncio
import logging

import pytest

from src.errors import ConflictError
from src.services.generation_registry import GenerationRegistry, TaskSupervisor


class TestGenerationRegistry:

    @pytest.mark.asyncio
    async def test_claim_registers_handle(self):
        registry = GenerationRegistry()
        handle = await registry.claim("c1", persist_claim=lambda: True)
        assert registry.get("c1") is handle
        assert registry.is_active("c1")
        assert registry.active_ids() == ["c1"]
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self):
        registry = GenerationRegistry()
        await registry.claim("c1", persist_claim=lambda: True)
        with pytest.raises(ConflictError):
            await registry.claim("c1", persist_claim=lambda: True)

    @pytest.mark.asyncio
    async def test_failed_persist_claim_conflicts(self):
        registry = GenerationRegistry()
        with pytest.raises(ConflictError):
            await registry.claim("c1", persist_claim=lambda: False)
        assert not registry.is_active("c1")

    @pytest.mark.asyncio
    async def test_concurrent_claims_only_one_wins(self):
        registry = GenerationRegistry()
        flag = {"generating": False}

        def persist_claim():
            if flag["generating"]:
                return False
            flag["generating"] = True
            return True

        results = await asyncio.gather(
            *(registry.claim("c1", persist_claim) for _ in range(5)),
            return_exceptions=True,
        )
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(losers) == 4
        assert all(isinstance(r, ConflictError) for r in losers)

    @pytest.mark.asyncio
    async def test_cancel_sets_token(self):
        registry = GenerationRegistry()
        handle = await registry.claim("c1", persist_claim=lambda: True)
        assert registry.cancel("c1") is True
        assert handle.token.cancelled is True

    def test_cancel_unknown_is_noop(self):
        assert GenerationRegistry().cancel("missing") is False

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        registry = GenerationRegistry()
        handle = await registry.claim("c1", persist_claim=lambda: True)
        registry.release("c1", handle)
        registry.release("c1", handle)
        assert not registry.is_active("c1")

    @pytest.mark.asyncio
    async def test_stale_release_keeps_newer_handle(self):
        registry = GenerationRegistry()
        old = await registry.claim("c1", persist_claim=lambda: True)
        registry.release("c1", old)
        new = await registry.claim("c1", persist_claim=lambda: True)
        registry.release("c1", old)
        assert registry.get("c1") is new

    @pytest.mark.asyncio
    async def test_cancel_logs_elapsed_time(self, caplog):
        registry = GenerationRegistry()
        handle = await registry.claim("c1", persist_claim=lambda: True)
        assert handle.elapsed_ms >= 0
        with caplog.at_level(logging.INFO, logger="src.services.generation_registry"):
            registry.cancel("c1")
        assert any(
            "Cancellation requested for conversation c1 after" in msg and msg.endswith("ms")
            for msg in caplog.messages
        )


class TestTaskSupervisor:

    @pytest.mark.asyncio
    async def test_keeps_reference_until_done(self):
        supervisor = TaskSupervisor()
        gate = asyncio.Event()

        async def job():
            await gate.wait()

        supervisor.spawn(job(), name="job")
        assert len(supervisor) == 1
        gate.set()
        await supervisor.wait_all()
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_logs_unhandled_exception(self, caplog):
        supervisor = TaskSupervisor()

        async def boom():
            raise RuntimeError("kaboom")

        with caplog.at_level(logging.ERROR):
            supervisor.spawn(boom(), name="boom-task")
            await supervisor.wait_all()
            await asyncio.sleep(0)
        assert any("boom-task" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_wait_all_includes_tasks_spawned_meanwhile(self):
        supervisor = TaskSupervisor()
        finished = []

        async def child():
            finished.append("child")

        async def parent():
            supervisor.spawn(child())
            finished.append("parent")

        supervisor.spawn(parent())
        await supervisor.wait_all()
        assert sorted(finished) == ["child", "parent"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers(self):
        supervisor = TaskSupervisor()
        task = supervisor.spawn(asyncio.sleep(10))
        await supervisor.shutdown(timeout=0.05)
        assert task.cancelled()
        assert len(supervisor) == 0
