from .entities import MemoryEntitiesMixin
from .extraction import MemoryExtractionStateMixin
from .messages import MemoryMessagesMixin
from .queue import MemoryQueueMixin
from .schema import MemorySchemaMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryEntitiesMixin",
    "MemoryMessagesMixin",
    "MemoryExtractionStateMixin",
    "MemoryQueueMixin",
]
