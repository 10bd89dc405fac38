from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..common import as_float, as_int, utc_now_iso
from ..models import DataType, Message, OwnerRef


class TaskKind(str, Enum):
    FAST_SCAN = "fast_scan"
    DETAIL_UPDATE = "detail_update"
    VALIDATION_REQUEST = "validation_request"
    DESCRIPTION_REGEN = "description_regen"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class ValidationKind(str, Enum):
    DATA_CONFIRM = "data_confirm"
    CROSS_PERSONA = "cross_persona"


def _messages_to_dicts(messages: list[Message]) -> list[dict[str, Any]]:
    return [m.to_dict() for m in messages]


def _messages_from_dicts(raw: Any) -> list[Message]:
    return [Message.from_dict(m) for m in raw or [] if isinstance(m, dict)]


@dataclass(slots=True)
class FastScanPayload:
    owner: OwnerRef
    persona: str
    data_types: list[DataType]
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner.key,
            "persona": self.persona,
            "data_types": [t.value for t in self.data_types],
            "messages": _messages_to_dicts(self.messages),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FastScanPayload":
        return cls(
            owner=OwnerRef.from_key(str(raw.get("owner") or "")),
            persona=str(raw.get("persona") or ""),
            data_types=[DataType(t) for t in raw.get("data_types") or []],
            messages=_messages_from_dicts(raw.get("messages")),
        )


@dataclass(slots=True)
class DetailUpdatePayload:
    owner: OwnerRef
    persona: str
    data_type: DataType
    item_name: str
    is_new: bool
    scan_confidence: str = "medium"
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner.key,
            "persona": self.persona,
            "data_type": self.data_type.value,
            "item_name": self.item_name,
            "is_new": self.is_new,
            "scan_confidence": self.scan_confidence,
            "messages": _messages_to_dicts(self.messages),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DetailUpdatePayload":
        return cls(
            owner=OwnerRef.from_key(str(raw.get("owner") or "")),
            persona=str(raw.get("persona") or ""),
            data_type=DataType(raw.get("data_type")),
            item_name=str(raw.get("item_name") or ""),
            is_new=bool(raw.get("is_new", False)),
            scan_confidence=str(raw.get("scan_confidence") or "medium"),
            messages=_messages_from_dicts(raw.get("messages")),
        )


@dataclass(slots=True)
class ValidationPayload:
    validation_kind: ValidationKind
    owner: OwnerRef
    persona: str
    data_type: DataType
    item_name: str
    context: str
    confidence: float | None = None
    source_persona: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_kind": self.validation_kind.value,
            "owner": self.owner.key,
            "persona": self.persona,
            "data_type": self.data_type.value,
            "item_name": self.item_name,
            "context": self.context,
            "confidence": self.confidence,
            "source_persona": self.source_persona,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ValidationPayload":
        confidence = raw.get("confidence")
        source = raw.get("source_persona")
        return cls(
            validation_kind=ValidationKind(raw.get("validation_kind")),
            owner=OwnerRef.from_key(str(raw.get("owner") or "")),
            persona=str(raw.get("persona") or ""),
            data_type=DataType(raw.get("data_type")),
            item_name=str(raw.get("item_name") or ""),
            context=str(raw.get("context") or ""),
            confidence=None if confidence is None else as_float(confidence),
            source_persona=str(source) if source else None,
        )


@dataclass(slots=True)
class DescriptionRegenPayload:
    persona: str

    @property
    def owner(self) -> OwnerRef:
        return OwnerRef.persona(self.persona)

    def to_dict(self) -> dict[str, Any]:
        return {"persona": self.persona}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DescriptionRegenPayload":
        return cls(persona=str(raw.get("persona") or ""))


TaskPayload = FastScanPayload | DetailUpdatePayload | ValidationPayload | DescriptionRegenPayload

PAYLOAD_TYPES: dict[TaskKind, type] = {
    TaskKind.FAST_SCAN: FastScanPayload,
    TaskKind.DETAIL_UPDATE: DetailUpdatePayload,
    TaskKind.VALIDATION_REQUEST: ValidationPayload,
    TaskKind.DESCRIPTION_REGEN: DescriptionRegenPayload,
}


def new_task_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class QueueTask:
    kind: TaskKind
    priority: Priority
    payload: TaskPayload
    id: str = field(default_factory=new_task_id)
    created_at: str = field(default_factory=utc_now_iso)
    attempts: int = 0
    last_attempt: str | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(f"{self.kind.value} task requires {expected.__name__}, got {type(self.payload).__name__}")

    @property
    def owner(self) -> OwnerRef:
        return self.payload.owner

    def sort_key(self) -> tuple[int, str]:
        return (self.priority.rank, self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "priority": self.priority.value,
            "payload": self.payload.to_dict(),
            "created_at": self.created_at,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QueueTask":
        """Raises ValueError for unknown kinds or priorities."""
        kind = TaskKind(raw.get("kind"))
        payload_raw = raw.get("payload")
        if not isinstance(payload_raw, dict):
            raise ValueError(f"{kind.value} task has no payload object")
        return cls(
            id=str(raw.get("id") or new_task_id()),
            kind=kind,
            priority=Priority(raw.get("priority") or Priority.NORMAL.value),
            payload=PAYLOAD_TYPES[kind].from_dict(payload_raw),
            created_at=str(raw.get("created_at") or utc_now_iso()),
            attempts=max(0, as_int(raw.get("attempts"), 0)),
            last_attempt=raw.get("last_attempt") or None,
            last_error=raw.get("last_error") or None,
        )


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    kind: TaskKind | str
    status: TaskStatus
    detail: str = ""
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
