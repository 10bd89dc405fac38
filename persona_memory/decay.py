from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .common import clamp, parse_iso, to_iso, utc_now
from .models import DataType, HumanEntity, OwnerRef, PersonaEntity, Topic

logger = logging.getLogger("persona_memory.decay")

DEFAULT_DECAY_K = 0.1
DEFAULT_MIN_HOURS = 0.1
DEFAULT_MIN_CHANGE = 0.001
DEFAULT_DESIRE_GAP = 0.3
DEFAULT_SENTIMENT_FLOOR = -0.5


def calculate_logarithmic_decay(value: float, hours: float, k: float = DEFAULT_DECAY_K) -> float:
    """Pull ``value`` down toward 0, never below it.

    The step ``k * v * (1 - v) * hours`` is largest at 0.5 and vanishes at 0
    and 1, so both ends are fixed points and results never leave [0, 1].
    """
    v = clamp(value)
    if hours <= 0:
        return v
    return clamp(v - k * v * (1.0 - v) * hours)


def has_desire_gap(
    item: Topic,
    threshold: float = DEFAULT_DESIRE_GAP,
    sentiment_floor: float = DEFAULT_SENTIMENT_FLOOR,
) -> bool:
    return (item.level_ideal - item.level_current) >= threshold and item.sentiment > sentiment_floor


@dataclass(slots=True)
class DecayChange:
    data_type: DataType
    name: str
    previous: float
    current: float


class _OwnerStore(Protocol):
    async def load_owner(self, owner: OwnerRef) -> HumanEntity | PersonaEntity | None: ...

    async def save_owner(self, owner: OwnerRef, entity: HumanEntity | PersonaEntity) -> None: ...


class DecayEngine:
    def __init__(
        self,
        store: _OwnerStore,
        *,
        k: float = DEFAULT_DECAY_K,
        min_hours: float = DEFAULT_MIN_HOURS,
        min_change: float = DEFAULT_MIN_CHANGE,
        desire_gap_threshold: float = DEFAULT_DESIRE_GAP,
        sentiment_floor: float = DEFAULT_SENTIMENT_FLOOR,
    ) -> None:
        self.store = store
        self.k = float(k)
        self.min_hours = float(min_hours)
        self.min_change = float(min_change)
        self.desire_gap_threshold = float(desire_gap_threshold)
        self.sentiment_floor = float(sentiment_floor)

    @staticmethod
    def _decaying_types(entity: HumanEntity | PersonaEntity) -> tuple[DataType, ...]:
        if isinstance(entity, HumanEntity):
            return (DataType.TOPIC, DataType.PERSON)
        return (DataType.TOPIC,)

    def apply(self, entity: HumanEntity | PersonaEntity, now: datetime | None = None) -> list[DecayChange]:
        """Decay levels in place. Items touched less than ``min_hours`` ago are left alone."""
        moment = now or utc_now()
        stamp = to_iso(moment)
        changes: list[DecayChange] = []
        for data_type in self._decaying_types(entity):
            for item in entity.bucket(data_type):
                if not isinstance(item, Topic):
                    continue
                updated = parse_iso(item.last_updated)
                if updated is None:
                    continue
                hours = (moment - updated).total_seconds() / 3600.0
                if hours < self.min_hours:
                    continue
                previous = item.level_current
                current = calculate_logarithmic_decay(previous, hours, self.k)
                if abs(current - previous) <= self.min_change:
                    continue
                item.level_current = current
                item.last_updated = stamp
                changes.append(DecayChange(data_type, item.name, previous, current))
        return changes

    async def apply_for_owner(self, owner: OwnerRef, now: datetime | None = None) -> bool:
        entity = await self.store.load_owner(owner)
        if entity is None:
            return False
        moment = now or utc_now()
        changes = self.apply(entity, moment)
        if not changes:
            return False
        entity.last_updated = to_iso(moment)
        await self.store.save_owner(owner, entity)
        logger.info("[decay] %s: %s item(s) decayed", owner.key, len(changes))
        return True

    def find_desire_gaps(self, entity: HumanEntity | PersonaEntity) -> list[Topic]:
        gaps: list[Topic] = []
        for data_type in self._decaying_types(entity):
            for item in entity.bucket(data_type):
                if isinstance(item, Topic) and has_desire_gap(item, self.desire_gap_threshold, self.sentiment_floor):
                    gaps.append(item)
        gaps.sort(key=lambda t: (t.level_ideal - t.level_current), reverse=True)
        return gaps
