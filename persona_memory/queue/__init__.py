from .durable import DurableQueueProcessor, is_permanent_failure
from .task_queue import TaskQueue
from .tasks import (
    DescriptionRegenPayload,
    DetailUpdatePayload,
    FastScanPayload,
    Priority,
    QueueTask,
    TaskKind,
    TaskOutcome,
    TaskStatus,
    ValidationKind,
    ValidationPayload,
)

__all__ = [
    "DescriptionRegenPayload",
    "DetailUpdatePayload",
    "DurableQueueProcessor",
    "FastScanPayload",
    "Priority",
    "QueueTask",
    "TaskKind",
    "TaskOutcome",
    "TaskQueue",
    "TaskStatus",
    "ValidationKind",
    "ValidationPayload",
    "is_permanent_failure",
]
