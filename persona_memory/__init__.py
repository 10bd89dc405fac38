from .cancellation import CANCELLED, CancellationToken
from .config import Settings
from .decay import DecayEngine, calculate_logarithmic_decay, has_desire_gap
from .frequency import FrequencyGate, should_extract
from .models import (
    DataType,
    Fact,
    HumanEntity,
    Message,
    OwnerRef,
    Person,
    PersonaEntity,
    Topic,
    Trait,
)
from .pipeline import MemoryPipeline
from .queue import DurableQueueProcessor, Priority, QueueTask, TaskKind, TaskQueue, TaskStatus
from .store import MemoryStore

__all__ = [
    "CANCELLED",
    "CancellationToken",
    "DataType",
    "DecayEngine",
    "DurableQueueProcessor",
    "Fact",
    "FrequencyGate",
    "HumanEntity",
    "MemoryPipeline",
    "MemoryStore",
    "Message",
    "OwnerRef",
    "Person",
    "PersonaEntity",
    "Priority",
    "QueueTask",
    "Settings",
    "TaskKind",
    "TaskQueue",
    "TaskStatus",
    "Topic",
    "Trait",
    "calculate_logarithmic_decay",
    "has_desire_gap",
    "should_extract",
]
