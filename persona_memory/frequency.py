from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Protocol

from .common import utc_now_iso
from .models import DataType, ExtractionHistory, Message, OwnerRef
from .queue.tasks import FastScanPayload, Priority, QueueTask, TaskKind

logger = logging.getLogger("persona_memory.frequency")

DEFAULT_CEILING = 10
ALWAYS_ELIGIBLE = frozenset({DataType.TOPIC, DataType.PERSON})


class _ExtractionStateStore(Protocol):
    async def load_extraction_state(self, owner: OwnerRef) -> dict[DataType, ExtractionHistory]: ...

    async def increment_message_counts(self, owner: OwnerRef, data_types: Iterable[DataType]) -> None: ...

    async def record_extraction(self, owner: OwnerRef, data_type: DataType, when: str) -> None: ...


def should_extract(data_type: DataType, history: ExtractionHistory, ceiling: int = DEFAULT_CEILING) -> bool:
    if data_type in ALWAYS_ELIGIBLE:
        return True
    threshold = min(ceiling, history.total_extractions)
    return history.messages_since_last_extract >= threshold


class FrequencyGate:
    """Decides which data types are due for a fast scan after each exchange.

    Fact and trait scans back off as an owner accumulates extractions, up to one
    scan per ``ceiling`` messages.
    """

    def __init__(
        self,
        store: _ExtractionStateStore,
        submit: Callable[[QueueTask], Awaitable[str]],
        *,
        ceiling: int = DEFAULT_CEILING,
    ) -> None:
        self.store = store
        self._submit = submit
        self.ceiling = max(1, int(ceiling))

    def eligible_types(self, owner: OwnerRef, state: dict[DataType, ExtractionHistory]) -> list[DataType]:
        return [
            data_type
            for data_type in owner.allowed_types()
            if should_extract(data_type, state.get(data_type) or ExtractionHistory(), self.ceiling)
        ]

    async def on_exchange(self, owner: OwnerRef, persona: str, messages: list[Message]) -> str | None:
        state = await self.store.load_extraction_state(owner)
        due = self.eligible_types(owner, state)
        task_id: str | None = None
        if due:
            task = QueueTask(
                kind=TaskKind.FAST_SCAN,
                priority=Priority.LOW,
                payload=FastScanPayload(owner=owner, persona=persona, data_types=due, messages=list(messages)),
            )
            task_id = await self._submit(task) or None
            if task_id:
                logger.info(
                    "[frequency] queued fast_scan for %s (types: %s)",
                    owner.key,
                    ", ".join(t.value for t in due),
                )
        await self.store.increment_message_counts(owner, owner.allowed_types())
        return task_id

    async def record_extraction(self, owner: OwnerRef, data_type: DataType) -> None:
        await self.store.record_extraction(owner, data_type, utc_now_iso())
        logger.debug("[frequency] recorded extraction %s/%s", owner.key, data_type.value)
