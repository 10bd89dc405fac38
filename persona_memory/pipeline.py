from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from .cancellation import CANCELLED, CancellationToken
from .decay import DecayEngine
from .extraction.descriptions import DescriptionProposal, DescriptionRegenerator
from .extraction.scanner import ExtractionScanner
from .extraction.updater import DetailSkip, DetailUpdater
from .frequency import FrequencyGate
from .llm.client import RetryingLLMClient
from .models import OwnerRef, Topic
from .queue.durable import DurableQueueProcessor
from .queue.task_queue import TaskQueue
from .queue.tasks import QueueTask, TaskKind, TaskOutcome, TaskStatus
from .store import MemoryStore

logger = logging.getLogger("persona_memory.pipeline")

Handler = Callable[[QueueTask, CancellationToken], Awaitable[TaskOutcome]]


class MemoryPipeline:
    """Owns the extraction components and the queue that drives them.

    With ``durable=False`` tasks run on an in-memory :class:`TaskQueue` and
    validation requests are parked in the store. With ``durable=True`` every
    task is persisted and a :class:`DurableQueueProcessor` runs them.
    """

    def __init__(
        self,
        store: MemoryStore,
        client: RetryingLLMClient,
        *,
        primary_persona: str = "ei",
        durable: bool = False,
        validation_cap: int = 5,
        frequency_ceiling: int = 10,
        message_window: int = 20,
        decay_k: float = 0.1,
        decay_min_hours: float = 0.1,
        decay_min_change: float = 0.001,
        desire_gap_threshold: float = 0.3,
        sentiment_floor: float = -0.5,
        poll_interval: float = 0.1,
        idle_interval: float = 1.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.client = client
        self.primary_persona = primary_persona
        self.message_window = max(2, int(message_window))

        self._handlers: dict[TaskKind, Handler] = {
            TaskKind.FAST_SCAN: self._run_fast_scan,
            TaskKind.DETAIL_UPDATE: self._run_detail_update,
            TaskKind.VALIDATION_REQUEST: self._park_validation,
            TaskKind.DESCRIPTION_REGEN: self._run_description_regen,
        }
        missing = [kind.value for kind in TaskKind if kind not in self._handlers]
        if missing:
            raise ValueError(f"MemoryPipeline has no handler for: {', '.join(missing)}")

        self.queue = TaskQueue(self.execute, shutdown_timeout=shutdown_timeout, poll_interval=poll_interval)
        self.durable: DurableQueueProcessor | None = None
        if durable:
            self.durable = DurableQueueProcessor(
                store,
                self._handlers,
                poll_interval=poll_interval,
                idle_interval=idle_interval,
            )

        self.gate = FrequencyGate(store, self.submit, ceiling=frequency_ceiling)
        self.scanner = ExtractionScanner(store, client, validation_cap=validation_cap)
        self.updater = DetailUpdater(store, client, self.gate, self.submit, primary_persona=primary_persona)
        self.descriptions = DescriptionRegenerator(store, client, primary_persona=primary_persona)
        self.decay = DecayEngine(
            store,
            k=decay_k,
            min_hours=decay_min_hours,
            min_change=decay_min_change,
            desire_gap_threshold=desire_gap_threshold,
            sentiment_floor=sentiment_floor,
        )

    async def start(self) -> None:
        await self.store.init()
        await self.client.start()
        if self.durable is not None:
            self.durable.start()

    async def close(self) -> None:
        await self.queue.shutdown()
        if self.durable is not None:
            await self.durable.stop()
        await self.client.close()

    async def submit(self, task: QueueTask) -> str:
        if self.durable is not None:
            return await self.durable.submit(task)
        return self.queue.enqueue_task(task)

    def abort_current(self, reason: str = "aborted") -> bool:
        if self.durable is not None:
            return self.durable.abort_current(reason)
        return self.queue.abort_current(reason)

    async def execute(self, task: QueueTask, token: CancellationToken) -> TaskOutcome:
        return await self._handlers[task.kind](task, token)

    async def on_exchange(self, persona: str, human_text: str, persona_text: str) -> list[str]:
        """Record one human/persona exchange and queue whatever scans are due."""
        await self.store.add_message(persona, "human", human_text)
        await self.store.add_message(persona, "persona", persona_text)
        owners = [OwnerRef.human()]
        if await self.store.load_persona(persona) is not None:
            owners.append(OwnerRef.persona(persona))
        else:
            logger.debug("[pipeline] persona %r has no record, skipping persona extraction", persona)

        queued: list[str] = []
        for owner in owners:
            messages = await self.store.recent_messages(
                persona, self.message_window, owner=owner, pending_only=True
            )
            task_id = await self.gate.on_exchange(owner, persona, messages)
            if task_id:
                queued.append(task_id)
        return queued

    async def heartbeat(self, owner: OwnerRef) -> list[Topic]:
        """Decay the owner's engagement levels and return items with a desire gap."""
        await self.decay.apply_for_owner(owner)
        entity = await self.store.load_owner(owner)
        if entity is None:
            return []
        return self.decay.find_desire_gaps(entity)

    async def pending_validations(self) -> list[QueueTask]:
        if self.durable is not None:
            return await self.durable.pending_validations()
        tasks: list[QueueTask] = []
        for row in await self.store.list_queue_items(TaskKind.VALIDATION_REQUEST.value):
            try:
                tasks.append(QueueTask.from_dict(row))
            except (TypeError, ValueError) as exc:
                logger.error("[pipeline] unreadable validation item %s: %s", row.get("id"), exc)
        return tasks

    async def clear_validations(self, item_ids: Iterable[str]) -> int:
        if self.durable is not None:
            return await self.durable.clear_validations(item_ids)
        return await self.store.delete_queue_items(item_ids)

    @staticmethod
    def _outcome(task: QueueTask, status: TaskStatus, detail: str = "") -> TaskOutcome:
        return TaskOutcome(task.id, task.kind, status, detail=detail)

    async def _run_fast_scan(self, task: QueueTask, token: CancellationToken) -> TaskOutcome:
        payload = task.payload
        result = await self.scanner.scan(payload, token)
        if result is CANCELLED:
            return self._outcome(task, TaskStatus.CANCELLED, token.reason or "cancelled")
        if result is None:
            return self._outcome(task, TaskStatus.SKIPPED, "scan produced no result")

        follow_ups = self.scanner.route(result, payload)
        for follow_up in follow_ups:
            await self.submit(follow_up)
        await self.store.mark_messages_extracted(payload.owner, (m.id for m in payload.messages if m.id))
        return self._outcome(task, TaskStatus.COMPLETED, f"{len(follow_ups)} follow-up task(s)")

    async def _run_detail_update(self, task: QueueTask, token: CancellationToken) -> TaskOutcome:
        proposal = await self.updater.gather(task.payload, token)
        if proposal is CANCELLED:
            return self._outcome(task, TaskStatus.CANCELLED, token.reason or "cancelled")
        if isinstance(proposal, DetailSkip):
            return self._outcome(task, TaskStatus.SKIPPED, proposal.reason)
        result = await self.updater.apply(proposal)
        status = TaskStatus.COMPLETED if result.applied else TaskStatus.SKIPPED
        return self._outcome(task, status, result.item_name)

    async def _park_validation(self, task: QueueTask, token: CancellationToken) -> TaskOutcome:
        await self.store.insert_queue_item(task)
        logger.info("[pipeline] validation for %r parked (%s)", task.payload.item_name, task.payload.validation_kind.value)
        return self._outcome(task, TaskStatus.COMPLETED, "parked")

    async def _run_description_regen(self, task: QueueTask, token: CancellationToken) -> TaskOutcome:
        proposal = await self.descriptions.gather(task.payload, token)
        if proposal is CANCELLED:
            return self._outcome(task, TaskStatus.CANCELLED, token.reason or "cancelled")
        if not isinstance(proposal, DescriptionProposal):
            return self._outcome(task, TaskStatus.SKIPPED, "no descriptions")
        applied = await self.descriptions.apply(proposal)
        return self._outcome(task, TaskStatus.COMPLETED if applied else TaskStatus.SKIPPED)
