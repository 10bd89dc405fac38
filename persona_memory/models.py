from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar

from .common import as_float, as_int, clamp, normalize_name


GLOBAL_GROUP = "*"
HUMAN_OWNER_NAME = "human"


class DataType(str, Enum):
    FACT = "fact"
    TRAIT = "trait"
    TOPIC = "topic"
    PERSON = "person"


# Order used when routing and when breaking validation ties.
DATA_TYPE_ORDER: tuple[DataType, ...] = (DataType.FACT, DataType.TRAIT, DataType.TOPIC, DataType.PERSON)
HUMAN_ONLY_TYPES = frozenset({DataType.FACT, DataType.PERSON})


class OwnerKind(str, Enum):
    HUMAN = "human"
    PERSONA = "persona"


@dataclass(slots=True, frozen=True)
class OwnerRef:
    kind: OwnerKind
    name: str

    @classmethod
    def human(cls) -> "OwnerRef":
        return cls(OwnerKind.HUMAN, HUMAN_OWNER_NAME)

    @classmethod
    def persona(cls, name: str) -> "OwnerRef":
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("persona owner name cannot be empty")
        return cls(OwnerKind.PERSONA, cleaned)

    @classmethod
    def from_key(cls, key: str) -> "OwnerRef":
        raw = (key or "").strip()
        if raw == OwnerKind.HUMAN.value:
            return cls.human()
        prefix = f"{OwnerKind.PERSONA.value}:"
        if raw.startswith(prefix):
            return cls.persona(raw[len(prefix) :])
        raise ValueError(f"unknown owner key: {key!r}")

    @property
    def is_human(self) -> bool:
        return self.kind is OwnerKind.HUMAN

    @property
    def key(self) -> str:
        if self.is_human:
            return OwnerKind.HUMAN.value
        return f"{OwnerKind.PERSONA.value}:{self.name}"

    def allowed_types(self) -> tuple[DataType, ...]:
        if self.is_human:
            return DATA_TYPE_ORDER
        return tuple(t for t in DATA_TYPE_ORDER if t not in HUMAN_ONLY_TYPES)

    def __str__(self) -> str:
        return self.key


@dataclass(slots=True)
class ChangeLogEntry:
    date: str
    persona: str
    delta_size: int
    previous_value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "persona": self.persona,
            "delta_size": self.delta_size,
            "previous_value": self.previous_value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChangeLogEntry":
        previous = raw.get("previous_value")
        return cls(
            date=str(raw.get("date") or ""),
            persona=str(raw.get("persona") or ""),
            delta_size=max(0, as_int(raw.get("delta_size"), 0)),
            previous_value=None if previous is None else str(previous),
        )


@dataclass(slots=True)
class DataItem:
    """Common fields shared by every remembered item."""

    name: str
    description: str = ""
    sentiment: float = 0.0
    last_updated: str = ""
    learned_by: str | None = None
    last_changed_by: str | None = None
    persona_groups: list[str] = field(default_factory=list)
    change_log: list[ChangeLogEntry] = field(default_factory=list)

    data_type: ClassVar[DataType]

    @property
    def key(self) -> str:
        return normalize_name(self.name)

    @property
    def is_global(self) -> bool:
        return not self.persona_groups or GLOBAL_GROUP in self.persona_groups

    def normalize(self) -> None:
        self.sentiment = clamp(as_float(self.sentiment), -1.0, 1.0)

    def to_dict(self, *, include_change_log: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "change_log":
                continue
            data[f.name] = getattr(self, f.name)
        data["persona_groups"] = list(self.persona_groups)
        if include_change_log:
            data["change_log"] = [entry.to_dict() for entry in self.change_log]
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DataItem":
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {k: v for k, v in raw.items() if k in known}
        kwargs["name"] = str(raw.get("name") or "").strip()
        kwargs["description"] = str(raw.get("description") or "")
        kwargs["persona_groups"] = [str(g) for g in raw.get("persona_groups") or []]
        kwargs["change_log"] = [
            ChangeLogEntry.from_dict(entry) for entry in raw.get("change_log") or [] if isinstance(entry, dict)
        ]
        item = cls(**kwargs)
        item.normalize()
        return item


@dataclass(slots=True)
class Fact(DataItem):
    confidence: float = 0.5
    last_confirmed: str | None = None

    data_type: ClassVar[DataType] = DataType.FACT

    def normalize(self) -> None:
        DataItem.normalize(self)
        self.confidence = clamp(as_float(self.confidence, 0.5))


@dataclass(slots=True)
class Trait(DataItem):
    strength: float | None = None
    kind: str = "dynamic"

    data_type: ClassVar[DataType] = DataType.TRAIT

    @property
    def is_static(self) -> bool:
        return self.kind == "static"

    def normalize(self) -> None:
        DataItem.normalize(self)
        if self.strength is not None:
            self.strength = clamp(as_float(self.strength, 0.5))
        self.kind = "static" if str(self.kind or "").strip().lower() == "static" else "dynamic"


@dataclass(slots=True)
class Topic(DataItem):
    level_current: float = 0.5
    level_ideal: float = 0.5
    category: str | None = None

    data_type: ClassVar[DataType] = DataType.TOPIC

    def normalize(self) -> None:
        DataItem.normalize(self)
        self.level_current = clamp(as_float(self.level_current, 0.5))
        self.level_ideal = clamp(as_float(self.level_ideal, 0.5))


@dataclass(slots=True)
class Person(Topic):
    relationship: str = ""

    data_type: ClassVar[DataType] = DataType.PERSON


ITEM_CLASSES: dict[DataType, type[DataItem]] = {
    DataType.FACT: Fact,
    DataType.TRAIT: Trait,
    DataType.TOPIC: Topic,
    DataType.PERSON: Person,
}


def item_from_dict(data_type: DataType, raw: dict[str, Any]) -> DataItem:
    return ITEM_CLASSES[data_type].from_dict(raw)


class _BucketOwner:
    _BUCKETS: ClassVar[dict[DataType, str]] = {}

    def bucket(self, data_type: DataType) -> list[DataItem]:
        attr = self._BUCKETS.get(data_type)
        if attr is None:
            raise ValueError(f"{type(self).__name__} has no {data_type.value} bucket")
        return getattr(self, attr)

    def find_item(self, data_type: DataType, name: str) -> DataItem | None:
        target = normalize_name(name)
        for item in self.bucket(data_type):
            if item.key == target:
                return item
        return None

    def upsert_item(self, item: DataItem) -> bool:
        """Replace the item with the same case-insensitive name, or append it. Returns True when new."""
        items = self.bucket(item.data_type)
        for index, existing in enumerate(items):
            if existing.key == item.key:
                items[index] = item
                return False
        items.append(item)
        return True

    def item_names(self) -> list[tuple[DataType, str]]:
        return [(data_type, item.name) for data_type in self._BUCKETS for item in self.bucket(data_type)]


@dataclass(slots=True)
class HumanEntity(_BucketOwner):
    facts: list[DataItem] = field(default_factory=list)
    traits: list[DataItem] = field(default_factory=list)
    topics: list[DataItem] = field(default_factory=list)
    people: list[DataItem] = field(default_factory=list)
    last_updated: str = ""

    _BUCKETS: ClassVar[dict[DataType, str]] = {
        DataType.FACT: "facts",
        DataType.TRAIT: "traits",
        DataType.TOPIC: "topics",
        DataType.PERSON: "people",
    }

    def to_dict(self) -> dict[str, Any]:
        return {
            "facts": [i.to_dict() for i in self.facts],
            "traits": [i.to_dict() for i in self.traits],
            "topics": [i.to_dict() for i in self.topics],
            "people": [i.to_dict() for i in self.people],
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "HumanEntity":
        entity = cls(last_updated=str(raw.get("last_updated") or ""))
        for data_type, attr in cls._BUCKETS.items():
            setattr(entity, attr, [item_from_dict(data_type, r) for r in raw.get(attr) or [] if isinstance(r, dict)])
        return entity


@dataclass(slots=True)
class PersonaEntity(_BucketOwner):
    name: str = ""
    aliases: list[str] = field(default_factory=list)
    short_description: str = ""
    long_description: str = ""
    group_primary: str | None = None
    groups_visible: list[str] = field(default_factory=list)
    traits: list[DataItem] = field(default_factory=list)
    topics: list[DataItem] = field(default_factory=list)
    last_updated: str = ""

    _BUCKETS: ClassVar[dict[DataType, str]] = {
        DataType.TRAIT: "traits",
        DataType.TOPIC: "topics",
    }

    def all_names(self) -> list[str]:
        return [n for n in [self.name, *self.aliases] if n and n.strip()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "aliases": list(self.aliases),
            "short_description": self.short_description,
            "long_description": self.long_description,
            "group_primary": self.group_primary,
            "groups_visible": list(self.groups_visible),
            "traits": [i.to_dict() for i in self.traits],
            "topics": [i.to_dict() for i in self.topics],
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "PersonaEntity":
        group_primary = raw.get("group_primary")
        return cls(
            name=str(raw.get("name") or ""),
            aliases=[str(a) for a in raw.get("aliases") or []],
            short_description=str(raw.get("short_description") or ""),
            long_description=str(raw.get("long_description") or ""),
            group_primary=str(group_primary) if group_primary else None,
            groups_visible=[str(g) for g in raw.get("groups_visible") or []],
            traits=[item_from_dict(DataType.TRAIT, r) for r in raw.get("traits") or [] if isinstance(r, dict)],
            topics=[item_from_dict(DataType.TOPIC, r) for r in raw.get("topics") or [] if isinstance(r, dict)],
            last_updated=str(raw.get("last_updated") or ""),
        )


OwnerEntity = HumanEntity | PersonaEntity


@dataclass(slots=True)
class Message:
    id: int
    persona: str
    role: str
    content: str
    timestamp: str = ""
    extracted: bool = False

    def speaker_label(self) -> str:
        if self.role == "human":
            return "[human]"
        return f"[ai_persona: {self.persona}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "persona": self.persona,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "extracted": self.extracted,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Message":
        return cls(
            id=as_int(raw.get("id"), 0),
            persona=str(raw.get("persona") or ""),
            role=str(raw.get("role") or "human"),
            content=str(raw.get("content") or ""),
            timestamp=str(raw.get("timestamp") or ""),
            extracted=bool(raw.get("extracted", False)),
        )


@dataclass(slots=True)
class ExtractionHistory:
    last_extraction: str | None = None
    messages_since_last_extract: int = 0
    total_extractions: int = 0
