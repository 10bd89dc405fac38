from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Iterable, Mapping, Protocol

from ..cancellation import CancellationToken
from ..llm.errors import LLMRequestError
from .task_queue import Executor, coerce_outcome
from .tasks import Priority, QueueTask, TaskKind, TaskOutcome, TaskPayload, TaskStatus

logger = logging.getLogger("persona_memory.queue.durable")

MAX_ATTEMPTS = 3
PERMANENT_FAILURE_PATTERNS = (
    re.compile(r"\(4(?!29)\d{2}\):"),
    re.compile(r"bad request", re.IGNORECASE),
)
# Parked for the human-verification flow; never run by the processor.
PARKED_KINDS = frozenset({TaskKind.VALIDATION_REQUEST})


def is_permanent_failure(error: BaseException | str | None) -> bool:
    if isinstance(error, LLMRequestError) and error.status is not None:
        if 400 <= error.status < 500 and error.status != 429:
            return True
    text = str(error or "")
    return any(pattern.search(text) for pattern in PERMANENT_FAILURE_PATTERNS)


class _QueueStore(Protocol):
    async def insert_queue_item(self, task: QueueTask) -> None: ...

    async def next_queue_item(self, *, exclude_kinds: Iterable[str] = ()) -> dict[str, Any] | None: ...

    async def list_queue_items(self, kind: str | None = None) -> list[dict[str, Any]]: ...

    async def count_queue_items(self, *, exclude_kinds: Iterable[str] = ()) -> int: ...

    async def delete_queue_items(self, item_ids: Iterable[str]) -> int: ...

    async def record_queue_failure(self, item_id: str, error: str) -> int: ...

    async def dead_letter_queue_item(self, item_id: str, error: str) -> bool: ...


class DurableQueueProcessor:
    """Polls the persisted queue and runs one item at a time.

    Items survive restarts. A failing item is retried up to ``max_attempts``
    times before it moves to the dead letter table; permanent failures (client
    errors other than rate limits) move there immediately. Pausing aborts the
    in-flight item without counting an attempt.
    """

    def __init__(
        self,
        store: _QueueStore,
        handlers: Mapping[TaskKind, Executor],
        *,
        poll_interval: float = 0.1,
        idle_interval: float = 1.0,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        missing = [kind.value for kind in TaskKind if kind not in PARKED_KINDS and kind not in handlers]
        if missing:
            raise ValueError(f"DurableQueueProcessor has no handler for: {', '.join(missing)}")
        self.store = store
        self._handlers = dict(handlers)
        self.poll_interval = float(poll_interval)
        self.idle_interval = float(idle_interval)
        self.max_attempts = max(1, int(max_attempts))
        self._paused = False
        self._stopping = False
        self._loop_task: asyncio.Task | None = None
        self._current: QueueTask | None = None
        self._token: CancellationToken | None = None
        self._runner: asyncio.Task | None = None

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def current_task(self) -> QueueTask | None:
        return self._current

    async def enqueue(self, kind: TaskKind, priority: Priority, payload: TaskPayload) -> str:
        return await self.submit(QueueTask(kind=kind, priority=priority, payload=payload))

    async def submit(self, task: QueueTask) -> str:
        """Persist a task. While stopping, only the in-flight item may still submit follow-ups."""
        if self._stopping and not self._is_in_flight_submit():
            logger.warning("[durable] rejected %s task %s: processor is stopping", task.kind.value, task.id)
            return ""
        await self.store.insert_queue_item(task)
        logger.debug("[durable] stored %s (%s) id=%s", task.kind.value, task.priority.value, task.id)
        return task.id

    def _is_in_flight_submit(self) -> bool:
        return self._runner is not None and asyncio.current_task() is self._runner

    async def queue_length(self) -> int:
        return await self.store.count_queue_items(exclude_kinds=[k.value for k in PARKED_KINDS])

    async def pending_validations(self) -> list[QueueTask]:
        tasks: list[QueueTask] = []
        for row in await self.store.list_queue_items(TaskKind.VALIDATION_REQUEST.value):
            try:
                tasks.append(QueueTask.from_dict(row))
            except (TypeError, ValueError) as exc:
                logger.error("[durable] unreadable validation item %s: %s", row.get("id"), exc)
        return tasks

    async def clear_validations(self, item_ids: Iterable[str]) -> int:
        removed = await self.store.delete_queue_items(item_ids)
        logger.info("[durable] cleared %s validation item(s)", removed)
        return removed

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._loop_task = asyncio.get_running_loop().create_task(self._process_loop())
        logger.info("[durable] processor started")

    async def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        self.abort_current("stopped")
        task = self._loop_task
        self._loop_task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[durable] processor loop did not stop within %.1fs", timeout)
        logger.info("[durable] processor stopped")

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self.abort_current("paused")
        logger.info("[durable] processor paused")

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        logger.info("[durable] processor resumed")

    def abort_current(self, reason: str = "aborted") -> bool:
        if self._token is None:
            return False
        self._token.cancel(reason)
        return True

    async def _process_loop(self) -> None:
        while not self._stopping:
            if self._paused:
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                outcome = await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[durable] processing iteration failed")
                outcome = None
            await asyncio.sleep(self.idle_interval if outcome is None else self.poll_interval)

    async def process_once(self) -> TaskOutcome | None:
        """Run the highest-priority runnable item. Returns None when nothing is runnable."""
        if self._paused:
            return None
        row = await self.store.next_queue_item(exclude_kinds=[k.value for k in PARKED_KINDS])
        if row is None:
            return None

        item_id = str(row.get("id") or "")
        try:
            task = QueueTask.from_dict(row)
        except (TypeError, ValueError) as exc:
            logger.error("[durable] invariant violation: unreadable %r item %s: %s", row.get("kind"), item_id, exc)
            await self._fail(item_id, f"unreadable item: {exc}", permanent=True)
            return TaskOutcome(item_id, str(row.get("kind") or ""), TaskStatus.FAILED, detail=str(exc))

        handler = self._handlers.get(task.kind)
        if handler is None:
            logger.error("[durable] invariant violation: no handler for %s item %s", task.kind.value, task.id)
            await self._fail(task.id, f"no handler for {task.kind.value}", permanent=True)
            return TaskOutcome(task.id, task.kind, TaskStatus.FAILED, detail="no handler")

        token = CancellationToken()
        self._current = task
        self._token = token
        self._runner = asyncio.current_task()
        try:
            try:
                result = await handler(task, token)
                outcome = coerce_outcome(task, result, token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[durable] %s item %s failed", task.kind.value, task.id)
                outcome = TaskOutcome(task.id, task.kind, TaskStatus.FAILED, detail=str(exc), error=exc)
        finally:
            self._current = None
            self._token = None
            self._runner = None

        if outcome.status is TaskStatus.CANCELLED:
            logger.info("[durable] %s item %s interrupted (%s), left queued", task.kind.value, task.id, token.reason)
        elif outcome.status is TaskStatus.FAILED:
            await self._fail(task.id, outcome.detail, error=outcome.error)
        else:
            await self.store.delete_queue_items([task.id])
        return outcome

    async def _fail(
        self,
        item_id: str,
        detail: str,
        *,
        error: BaseException | None = None,
        permanent: bool = False,
    ) -> None:
        message = detail or (str(error) if error else "unknown error")
        if permanent or is_permanent_failure(error if error is not None else message):
            await self.store.dead_letter_queue_item(item_id, message)
            logger.warning("[durable] item %s dead-lettered (permanent): %s", item_id, message)
            return
        attempts = await self.store.record_queue_failure(item_id, message)
        if attempts >= self.max_attempts:
            await self.store.dead_letter_queue_item(item_id, message)
            logger.warning("[durable] item %s dead-lettered after %s attempts: %s", item_id, attempts, message)
        else:
            logger.info("[durable] item %s failed (attempt %s/%s): %s", item_id, attempts, self.max_attempts, message)
