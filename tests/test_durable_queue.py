from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_memory.llm.errors import LLMRequestError, RateLimitedError  # noqa: E402
from persona_memory.models import DataType, OwnerRef  # noqa: E402
from persona_memory.queue.durable import DurableQueueProcessor, is_permanent_failure  # noqa: E402
from persona_memory.queue.tasks import (  # noqa: E402
    DescriptionRegenPayload,
    Priority,
    QueueTask,
    TaskKind,
    TaskStatus,
    ValidationKind,
    ValidationPayload,
)
from persona_memory.store import MemoryStore  # noqa: E402


def _store(tmp_path: Path) -> MemoryStore:
    store = MemoryStore(tmp_path / "memory.db")
    asyncio.run(store.init())
    return store


def _handlers(regen):  # type: ignore[no-untyped-def]
    async def unused(task, token):  # type: ignore[no-untyped-def]
        raise AssertionError(f"unexpected {task.kind.value}")

    return {
        TaskKind.FAST_SCAN: unused,
        TaskKind.DETAIL_UPDATE: unused,
        TaskKind.DESCRIPTION_REGEN: regen,
    }


def _regen(name: str = "mira", priority: Priority = Priority.LOW) -> QueueTask:
    return QueueTask(TaskKind.DESCRIPTION_REGEN, priority, DescriptionRegenPayload(name))


def _validation() -> QueueTask:
    return QueueTask(
        TaskKind.VALIDATION_REQUEST,
        Priority.HIGH,
        ValidationPayload(
            validation_kind=ValidationKind.DATA_CONFIRM,
            owner=OwnerRef.human(),
            persona="mira",
            data_type=DataType.FACT,
            item_name="Has a cat",
            context="low confidence",
            confidence=0.3,
        ),
    )


def test_constructor_requires_a_handler_for_every_runnable_kind(tmp_path: Path) -> None:
    async def handler(task, token):  # type: ignore[no-untyped-def]
        return TaskStatus.COMPLETED

    with pytest.raises(ValueError, match="detail_update"):
        DurableQueueProcessor(_store(tmp_path), {TaskKind.FAST_SCAN: handler, TaskKind.DESCRIPTION_REGEN: handler})


def test_validation_requests_are_parked_not_processed(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ran: list[str] = []

    async def regen(task, token):  # type: ignore[no-untyped-def]
        ran.append(task.payload.persona)
        return TaskStatus.COMPLETED

    processor = DurableQueueProcessor(store, _handlers(regen))
    validation = _validation()

    async def scenario():  # type: ignore[no-untyped-def]
        await processor.submit(validation)
        await processor.submit(_regen())
        first = await processor.process_once()
        second = await processor.process_once()
        return first, second, await processor.queue_length(), await processor.pending_validations()

    first, second, length, pending = asyncio.run(scenario())

    assert first.status is TaskStatus.COMPLETED
    assert second is None
    assert ran == ["mira"]
    assert length == 0
    assert [t.id for t in pending] == [validation.id]

    assert asyncio.run(processor.clear_validations([validation.id])) == 1
    assert asyncio.run(processor.pending_validations()) == []


def test_transient_failures_retry_then_dead_letter(tmp_path: Path) -> None:
    store = _store(tmp_path)
    calls = {"n": 0}

    async def regen(task, token):  # type: ignore[no-untyped-def]
        calls["n"] += 1
        raise RateLimitedError("still rate limited")

    processor = DurableQueueProcessor(store, _handlers(regen))
    task = _regen()

    async def scenario():  # type: ignore[no-untyped-def]
        await processor.submit(task)
        statuses = []
        for _ in range(4):
            outcome = await processor.process_once()
            statuses.append(outcome.status if outcome else None)
        return statuses, await store.list_dead_letters()

    statuses, dead = asyncio.run(scenario())

    assert statuses == [TaskStatus.FAILED, TaskStatus.FAILED, TaskStatus.FAILED, None]
    assert calls["n"] == 3
    assert dead[0]["item_id"] == task.id
    assert dead[0]["attempts"] == 3


def test_permanent_failure_is_dead_lettered_immediately(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def regen(task, token):  # type: ignore[no-untyped-def]
        raise LLMRequestError("openai request failed (400): bad request", status=400)

    processor = DurableQueueProcessor(store, _handlers(regen))

    async def scenario():  # type: ignore[no-untyped-def]
        await processor.submit(_regen())
        await processor.process_once()
        return await processor.queue_length(), await store.list_dead_letters()

    length, dead = asyncio.run(scenario())

    assert length == 0
    assert len(dead) == 1
    assert dead[0]["attempts"] == 0


def test_pause_aborts_in_flight_item_without_counting_an_attempt(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def regen(task, token):  # type: ignore[no-untyped-def]
        if await token.sleep(5.0):
            return TaskStatus.COMPLETED
        return TaskStatus.CANCELLED

    processor = DurableQueueProcessor(store, _handlers(regen))
    task = _regen()

    async def scenario():  # type: ignore[no-untyped-def]
        await processor.submit(task)
        running = asyncio.create_task(processor.process_once())
        await asyncio.sleep(0.05)
        assert processor.current_task is not None
        processor.pause()
        outcome = await asyncio.wait_for(running, timeout=1.0)
        skipped = await processor.process_once()
        return outcome, skipped, await store.list_queue_items()

    outcome, skipped, rows = asyncio.run(scenario())

    assert outcome.status is TaskStatus.CANCELLED
    assert skipped is None
    assert processor.is_paused
    assert [(row["id"], row["attempts"]) for row in rows] == [(task.id, 0)]


def test_background_loop_drains_queue_in_priority_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ran: list[str] = []

    async def regen(task, token):  # type: ignore[no-untyped-def]
        ran.append(task.payload.persona)
        return TaskStatus.COMPLETED

    processor = DurableQueueProcessor(store, _handlers(regen), poll_interval=0.01, idle_interval=0.01)

    async def scenario() -> None:
        await processor.submit(_regen("low", Priority.LOW))
        await processor.submit(_regen("high", Priority.HIGH))
        await processor.submit(_regen("normal", Priority.NORMAL))
        processor.start()
        for _ in range(200):
            if await processor.queue_length() == 0:
                break
            await asyncio.sleep(0.01)
        await processor.stop(timeout=1.0)

    asyncio.run(scenario())

    assert ran == ["high", "normal", "low"]
    assert not processor.is_running


def test_is_permanent_failure_classification() -> None:
    assert is_permanent_failure(LLMRequestError("nope", status=404))
    assert not is_permanent_failure(LLMRequestError("slow down", status=429))
    assert not is_permanent_failure(LLMRequestError("server", status=503))
    assert is_permanent_failure("request failed (422): invalid")
    assert is_permanent_failure("Bad Request: missing field")
    assert not is_permanent_failure("request failed (429): too many")
    assert not is_permanent_failure(None)


def test_stop_keeps_follow_ups_from_the_in_flight_item(tmp_path: Path) -> None:
    store = _store(tmp_path)
    started = asyncio.Event()
    release = asyncio.Event()
    follow_up_ids: list[str] = []
    validation = _validation()

    async def regen(task, token):  # type: ignore[no-untyped-def]
        started.set()
        await release.wait()
        follow_up_ids.append(await processor.submit(validation))
        return TaskStatus.COMPLETED

    processor = DurableQueueProcessor(store, _handlers(regen), poll_interval=0.01, idle_interval=0.01)

    async def scenario():  # type: ignore[no-untyped-def]
        await processor.submit(_regen())
        processor.start()
        await asyncio.wait_for(started.wait(), timeout=1.0)
        stopping = asyncio.create_task(processor.stop(timeout=1.0))
        await asyncio.sleep(0.01)
        outside = await processor.submit(_regen("late"))
        release.set()
        await stopping
        return outside, await processor.queue_length(), await processor.pending_validations()

    outside, length, pending = asyncio.run(scenario())

    assert outside == ""
    assert follow_up_ids == [validation.id]
    assert length == 0
    assert [t.id for t in pending] == [validation.id]
