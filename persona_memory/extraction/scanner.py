from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..cancellation import CANCELLED, CancellationToken
from ..common import collapse_spaces, normalize_name, truncate
from ..llm.client import RetryingLLMClient
from ..llm.errors import LLMError
from ..models import DATA_TYPE_ORDER, DataType, HumanEntity, OwnerRef, PersonaEntity
from ..prompts.extraction import build_scan_prompts
from ..queue.tasks import (
    DetailUpdatePayload,
    FastScanPayload,
    Priority,
    QueueTask,
    TaskKind,
    ValidationKind,
    ValidationPayload,
)

logger = logging.getLogger("persona_memory.scan")

CONFIDENCE_LEVELS = ("high", "medium", "low")
LOW_CONFIDENCE_SCORE = 0.3
DEFAULT_VALIDATION_CAP = 5


@dataclass(slots=True)
class ScanHit:
    name: str
    data_type: DataType
    confidence: str
    reason: str = ""

    @property
    def key(self) -> str:
        return normalize_name(self.name)


@dataclass(slots=True)
class FastScanResult:
    mentioned: list[ScanHit] = field(default_factory=list)
    new_items: list[ScanHit] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.mentioned and not self.new_items


class _ScanStore(Protocol):
    async def load_owner(self, owner: OwnerRef) -> HumanEntity | PersonaEntity | None: ...

    async def list_personas(self) -> list[PersonaEntity]: ...


def _parse_hits(raw: Any, allowed: set[DataType]) -> list[ScanHit]:
    hits: list[ScanHit] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            continue
        name = collapse_spaces(str(entry.get("name") or ""))
        if not name:
            continue
        try:
            data_type = DataType(str(entry.get("type") or "").strip().lower())
        except ValueError:
            continue
        if data_type not in allowed:
            continue
        confidence = str(entry.get("confidence") or "").strip().lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "low"
        hits.append(ScanHit(name, data_type, confidence, collapse_spaces(str(entry.get("reason") or ""))))
    return hits


def parse_scan_result(raw: Any, data_types: list[DataType]) -> FastScanResult | None:
    if not isinstance(raw, dict):
        return None
    mentioned = raw.get("mentioned")
    new_items = raw.get("new_items")
    if mentioned is None and new_items is None:
        return None
    if not isinstance(mentioned or [], list) or not isinstance(new_items or [], list):
        return None
    allowed = set(data_types)
    return FastScanResult(mentioned=_parse_hits(mentioned, allowed), new_items=_parse_hits(new_items, allowed))


class ExtractionScanner:
    """Phase one of extraction: a cheap pass that names what a conversation touched."""

    def __init__(
        self,
        store: _ScanStore,
        client: RetryingLLMClient,
        *,
        validation_cap: int = DEFAULT_VALIDATION_CAP,
        temperature: float = 0.3,
    ) -> None:
        self.store = store
        self.client = client
        self.validation_cap = max(0, int(validation_cap))
        self.temperature = temperature

    async def scan(self, payload: FastScanPayload, token: CancellationToken) -> FastScanResult | None | object:
        owner = payload.owner
        allowed = owner.allowed_types()
        data_types = [t for t in payload.data_types if t in allowed]
        if not data_types or not payload.messages:
            return FastScanResult()

        entity = await self.store.load_owner(owner)
        if entity is None:
            logger.warning("[scan] owner %s not found, skipping scan", owner.key)
            return None
        personas = await self.store.list_personas()
        persona_names = [name for p in personas for name in p.all_names()]

        system, user = build_scan_prompts(
            owner,
            payload.persona,
            entity.item_names(),
            payload.messages,
            data_types,
            persona_names,
        )
        try:
            raw = await self.client.complete_json(system, user, token=token, temperature=self.temperature)
        except LLMError as exc:
            logger.warning("[scan] %s scan failed: %s", owner.key, exc)
            return None
        if raw is CANCELLED:
            return CANCELLED

        result = parse_scan_result(raw, data_types)
        if result is None:
            logger.warning("[scan] %s: malformed scan result %s", owner.key, truncate(repr(raw), 200))
            return None

        blocked = {normalize_name(n) for n in persona_names}
        kept = [hit for hit in result.new_items if hit.key not in blocked]
        if len(kept) != len(result.new_items):
            logger.info("[scan] dropped %s new item(s) naming a known persona", len(result.new_items) - len(kept))
        result.new_items = kept
        return result

    def route(self, result: FastScanResult, payload: FastScanPayload) -> list[QueueTask]:
        """Turn scan hits into follow-up tasks. Does not touch storage or the queue."""
        owner = payload.owner
        allowed = set(owner.allowed_types())
        new_by_key = {(hit.data_type, hit.key): hit for hit in result.new_items}

        tasks: list[QueueTask] = []
        seen: set[tuple[DataType, str]] = set()
        uncertain: list[ScanHit] = []
        for hit in [*result.mentioned, *result.new_items]:
            if hit.data_type not in allowed:
                logger.debug("[scan] %s not tracked for %s, skipping %s", hit.data_type.value, owner.key, hit.name)
                continue
            marker = (hit.data_type, hit.key)
            if marker in seen:
                continue
            seen.add(marker)
            if hit.confidence == "low":
                uncertain.append(hit)
                continue
            tasks.append(
                QueueTask(
                    kind=TaskKind.DETAIL_UPDATE,
                    priority=Priority.NORMAL,
                    payload=DetailUpdatePayload(
                        owner=owner,
                        persona=payload.persona,
                        data_type=hit.data_type,
                        item_name=hit.name,
                        is_new=marker in new_by_key,
                        scan_confidence=hit.confidence,
                        messages=list(payload.messages),
                    ),
                )
            )

        uncertain.sort(
            key=lambda h: (DATA_TYPE_ORDER.index(h.data_type), CONFIDENCE_LEVELS.index(h.confidence), h.key)
        )
        if len(uncertain) > self.validation_cap:
            logger.info(
                "[scan] %s: %s low-confidence item(s) over the validation cap dropped",
                owner.key,
                len(uncertain) - self.validation_cap,
            )
        for hit in uncertain[: self.validation_cap]:
            new_hit = new_by_key.get((hit.data_type, hit.key))
            if new_hit is not None:
                detail = f"Reason: {new_hit.reason}" if new_hit.reason else "Suggested as new."
            else:
                detail = "Mentioned but unclear if relevant."
            tasks.append(
                QueueTask(
                    kind=TaskKind.VALIDATION_REQUEST,
                    priority=Priority.LOW,
                    payload=ValidationPayload(
                        validation_kind=ValidationKind.DATA_CONFIRM,
                        owner=owner,
                        persona=payload.persona,
                        data_type=hit.data_type,
                        item_name=hit.name,
                        context=f'Detected "{hit.name}" ({hit.data_type.value}) with low confidence. {detail}',
                        confidence=LOW_CONFIDENCE_SCORE,
                    ),
                )
            )
        return tasks
