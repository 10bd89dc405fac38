from __future__ import annotations

import aiosqlite

from .storage.entities import MemoryEntitiesMixin
from .storage.extraction import MemoryExtractionStateMixin
from .storage.messages import MemoryMessagesMixin
from .storage.queue import MemoryQueueMixin
from .storage.schema import MemorySchemaMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryEntitiesMixin,
    MemoryMessagesMixin,
    MemoryExtractionStateMixin,
    MemoryQueueMixin,
):
    """Persistent owner documents, message log, extraction cadence state and durable queue."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("SELECT 1")
