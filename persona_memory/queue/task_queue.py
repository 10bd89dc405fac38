from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..cancellation import CancellationToken
from ..models import OwnerRef
from .tasks import Priority, QueueTask, TaskKind, TaskOutcome, TaskPayload, TaskStatus

logger = logging.getLogger("persona_memory.queue")

Executor = Callable[[QueueTask, CancellationToken], Awaitable["TaskOutcome | TaskStatus | None"]]
CompletionCallback = Callable[[QueueTask, TaskOutcome], None]


def coerce_outcome(task: QueueTask, result: TaskOutcome | TaskStatus | None, token: CancellationToken) -> TaskOutcome:
    if isinstance(result, TaskOutcome):
        return result
    if isinstance(result, TaskStatus):
        return TaskOutcome(task.id, task.kind, result)
    status = TaskStatus.CANCELLED if token.cancelled else TaskStatus.COMPLETED
    return TaskOutcome(task.id, task.kind, status)


class TaskQueue:
    """In-memory priority queue that runs one task at a time on the event loop.

    Pending tasks are kept sorted by priority, then creation time. A processing
    cycle is scheduled with ``loop.call_soon`` only when none is in flight, and
    each finished cycle schedules the next one while work remains.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        shutdown_timeout: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._executor = executor
        self.shutdown_timeout = float(shutdown_timeout)
        self.poll_interval = float(poll_interval)
        self._pending: list[QueueTask] = []
        self._processing = False
        self._scheduled = False
        self._shutting_down = False
        self._current: QueueTask | None = None
        self._token: CancellationToken | None = None
        self._cycle: asyncio.Task | None = None
        self._callback: CompletionCallback | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def current_task(self) -> QueueTask | None:
        return self._current

    def set_completion_callback(self, callback: CompletionCallback | None) -> None:
        self._callback = callback

    def enqueue(self, kind: TaskKind, priority: Priority, payload: TaskPayload) -> str:
        return self.enqueue_task(QueueTask(kind=kind, priority=priority, payload=payload))

    def enqueue_task(self, task: QueueTask) -> str:
        if self._shutting_down:
            logger.warning("[queue] rejected %s task %s: queue is shutting down", task.kind.value, task.id)
            return ""
        self._pending.append(task)
        self._pending.sort(key=QueueTask.sort_key)
        self._idle.clear()
        logger.debug("[queue] enqueued %s (%s) id=%s pending=%s", task.kind.value, task.priority.value, task.id, len(self._pending))
        self._schedule()
        return task.id

    async def submit(self, task: QueueTask) -> str:
        return self.enqueue_task(task)

    def pending_tasks(self) -> list[QueueTask]:
        return list(self._pending)

    def pending_for_owner(self, owner: OwnerRef) -> list[QueueTask]:
        return [task for task in self._pending if task.owner == owner]

    def cancel_owner_tasks(self, owner: OwnerRef) -> int:
        """Drop queued tasks for ``owner``. The in-flight task is not affected."""
        before = len(self._pending)
        self._pending = [task for task in self._pending if task.owner != owner]
        removed = before - len(self._pending)
        if removed:
            logger.info("[queue] dropped %s pending task(s) for %s", removed, owner.key)
        if not self._pending and not self._processing:
            self._idle.set()
        return removed

    def abort_current(self, reason: str = "aborted") -> bool:
        if self._token is None:
            return False
        self._token.cancel(reason)
        logger.info("[queue] abort requested for %s (%s)", self._current.id if self._current else "?", reason)
        return True

    def _schedule(self) -> None:
        if self._processing or self._scheduled or self._shutting_down or not self._pending:
            return
        self._scheduled = True
        asyncio.get_running_loop().call_soon(self._start_cycle)

    def _start_cycle(self) -> None:
        self._scheduled = False
        if self._processing or self._shutting_down or not self._pending:
            return
        self._processing = True
        self._cycle = asyncio.get_running_loop().create_task(self._run_cycle())

    async def process_next(self) -> TaskOutcome | None:
        """Run the head task now. Returns None when idle or when a cycle is already in flight."""
        if self._processing or self._shutting_down or not self._pending:
            return None
        self._processing = True
        return await self._run_cycle()

    async def _run_cycle(self) -> TaskOutcome:
        task = self._pending.pop(0)
        token = CancellationToken()
        self._current = task
        self._token = token
        try:
            try:
                result = await self._executor(task, token)
                outcome = coerce_outcome(task, result, token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[queue] %s task %s failed", task.kind.value, task.id)
                outcome = TaskOutcome(task.id, task.kind, TaskStatus.FAILED, detail=str(exc), error=exc)
            logger.debug("[queue] %s task %s -> %s", task.kind.value, task.id, outcome.status.value)
            self._notify(task, outcome)
            return outcome
        finally:
            self._current = None
            self._token = None
            self._processing = False
            self._cycle = None
            if self._pending and not self._shutting_down:
                self._schedule()
            else:
                self._idle.set()

    def _notify(self, task: QueueTask, outcome: TaskOutcome) -> None:
        if self._callback is None:
            return
        try:
            self._callback(task, outcome)
        except Exception:
            logger.exception("[queue] completion callback raised for task %s", task.id)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def shutdown(self) -> None:
        self._shutting_down = True
        self.abort_current("shutdown")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_timeout
        while self._processing and loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
        if self._processing:
            logger.warning("[queue] in-flight task did not stop within %.1fs, abandoning it", self.shutdown_timeout)
        dropped = len(self._pending)
        self._pending.clear()
        self._idle.set()
        logger.info("[queue] shutdown complete, %s pending task(s) dropped", dropped)
