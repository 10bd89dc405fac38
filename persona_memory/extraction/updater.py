from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from ..cancellation import CANCELLED, CancellationToken
from ..common import collapse_spaces, is_number, normalize_name, truncate, utc_now_iso
from ..llm.client import RetryingLLMClient
from ..llm.errors import LLMError
from ..models import (
    ITEM_CLASSES,
    ChangeLogEntry,
    DataItem,
    DataType,
    HumanEntity,
    OwnerRef,
    PersonaEntity,
    Trait,
)
from ..prompts.extraction import build_detail_prompts
from ..queue.tasks import (
    DescriptionRegenPayload,
    DetailUpdatePayload,
    Priority,
    QueueTask,
    TaskKind,
    ValidationKind,
    ValidationPayload,
)
from ..reconciliation import merge_with_original_statics, reconcile_visibility, validate_static_traits

logger = logging.getLogger("persona_memory.detail")

# Phrases a model uses when it has nothing to cite. Substring match, so this is a heuristic.
WEAK_EVIDENCE_PATTERNS: tuple[str, ...] = (
    "no evidence",
    "not demonstrated",
    "not mentioned",
    "unclear",
    "uncertain",
    "cannot find",
    "can't find",
    "no message",
    "not shown",
    "not enough information",
)
EVIDENCE_REQUIRED = frozenset({DataType.TRAIT, DataType.TOPIC})

_CONTENT_FIELDS: dict[DataType, tuple[str, ...]] = {
    DataType.FACT: ("confidence",),
    DataType.TRAIT: ("strength", "kind"),
    DataType.TOPIC: ("level_current", "level_ideal", "category"),
    DataType.PERSON: ("level_current", "level_ideal", "category", "relationship"),
}


def is_weak_evidence(evidence: str) -> bool:
    text = (evidence or "").casefold()
    return any(pattern in text for pattern in WEAK_EVIDENCE_PATTERNS)


def validate_detail_result(raw: dict[str, Any], data_type: DataType) -> DataItem | None:
    """Build a typed item from model output, or None when a required field is missing or mistyped."""
    name = raw.get("name")
    description = raw.get("description")
    if not isinstance(name, str) or not collapse_spaces(name):
        return None
    if not isinstance(description, str) or not description.strip():
        return None
    if not is_number(raw.get("sentiment")):
        return None

    if data_type is DataType.FACT:
        if not is_number(raw.get("confidence")):
            return None
    elif data_type is DataType.TRAIT:
        if raw.get("strength") is not None and not is_number(raw.get("strength")):
            return None
    else:
        if not is_number(raw.get("level_current")) or not is_number(raw.get("level_ideal")):
            return None
        if data_type is DataType.PERSON:
            relationship = raw.get("relationship")
            if not isinstance(relationship, str) or not relationship.strip():
                return None

    kwargs: dict[str, Any] = {
        "name": collapse_spaces(name),
        "description": description.strip(),
        "sentiment": raw["sentiment"],
    }
    for key in _CONTENT_FIELDS[data_type]:
        if raw.get(key) is not None:
            kwargs[key] = raw[key]
    item = ITEM_CLASSES[data_type](**kwargs)
    item.normalize()
    return item


def _content_json(item: DataItem) -> str:
    return json.dumps(item.to_dict(include_change_log=False), ensure_ascii=False, sort_keys=True)


def build_change_entry(persona: str, previous: DataItem | None, current: DataItem, when: str) -> ChangeLogEntry:
    current_json = _content_json(current)
    if previous is None:
        return ChangeLogEntry(date=when, persona=persona, delta_size=len(current_json))
    previous_json = _content_json(previous)
    return ChangeLogEntry(
        date=when,
        persona=persona,
        delta_size=abs(len(current_json) - len(previous_json)),
        previous_value=previous_json,
    )


@dataclass(slots=True)
class DetailProposal:
    payload: DetailUpdatePayload
    item: DataItem
    evidence: str = ""
    declared_fields: frozenset[str] = frozenset()


@dataclass(slots=True)
class DetailSkip:
    reason: str


@dataclass(slots=True)
class DetailApplyResult:
    applied: bool
    created: bool = False
    item_name: str = ""
    static_issues: list[str] = field(default_factory=list)
    follow_up_ids: list[str] = field(default_factory=list)


class _DetailStore(Protocol):
    async def load_owner(self, owner: OwnerRef) -> HumanEntity | PersonaEntity | None: ...

    async def save_owner(self, owner: OwnerRef, entity: HumanEntity | PersonaEntity) -> None: ...

    async def load_persona(self, name: str) -> PersonaEntity | None: ...


class _ExtractionRecorder(Protocol):
    async def record_extraction(self, owner: OwnerRef, data_type: DataType) -> None: ...


class DetailUpdater:
    """Phase two of extraction: one focused, evidence-gated update per item.

    ``gather`` may call the model and honours the cancellation token.
    ``apply`` performs only storage writes and queue submissions.
    """

    def __init__(
        self,
        store: _DetailStore,
        client: RetryingLLMClient,
        recorder: _ExtractionRecorder,
        submit: Callable[[QueueTask], Awaitable[str]],
        *,
        primary_persona: str = "ei",
        temperature: float = 0.3,
    ) -> None:
        self.store = store
        self.client = client
        self.recorder = recorder
        self._submit = submit
        self.primary_persona = primary_persona
        self.temperature = temperature

    def _is_primary(self, persona: str) -> bool:
        return normalize_name(persona) == normalize_name(self.primary_persona)

    async def gather(self, payload: DetailUpdatePayload, token: CancellationToken) -> DetailProposal | DetailSkip | object:
        owner = payload.owner
        entity = await self.store.load_owner(owner)
        if entity is None:
            return DetailSkip(f"owner {owner.key} not found")
        existing = None if payload.is_new else entity.find_item(payload.data_type, payload.item_name)

        system, user = build_detail_prompts(
            owner,
            payload.persona,
            payload.data_type,
            payload.item_name,
            existing,
            payload.messages,
            payload.is_new,
        )
        try:
            raw = await self.client.complete_json(system, user, token=token, temperature=self.temperature)
        except LLMError as exc:
            logger.warning("[detail] %s %r: model call failed: %s", payload.data_type.value, payload.item_name, exc)
            return DetailSkip(f"model call failed: {exc}")
        if raw is CANCELLED:
            return CANCELLED
        if not isinstance(raw, dict):
            return DetailSkip("no usable result")
        if raw.get("skip") is True:
            logger.info("[detail] model skipped %s %r", payload.data_type.value, payload.item_name)
            return DetailSkip("model skipped")

        evidence = raw.get("evidence")
        evidence_text = str(evidence).strip() if evidence is not None else ""
        if evidence_text and is_weak_evidence(evidence_text):
            logger.info(
                "[detail] weak evidence for %s %r: %s",
                payload.data_type.value,
                payload.item_name,
                truncate(evidence_text, 160),
            )
            return DetailSkip("weak evidence")
        if not evidence_text and payload.data_type in EVIDENCE_REQUIRED:
            logger.info("[detail] no evidence for %s %r", payload.data_type.value, payload.item_name)
            return DetailSkip("missing evidence")

        item = validate_detail_result(raw, payload.data_type)
        if item is None:
            logger.warning(
                "[detail] invalid %s result for %r: %s",
                payload.data_type.value,
                payload.item_name,
                truncate(json.dumps(raw, ensure_ascii=False), 300),
            )
            return DetailSkip("invalid result")
        return DetailProposal(payload=payload, item=item, evidence=evidence_text, declared_fields=frozenset(raw))

    async def apply(self, proposal: DetailProposal) -> DetailApplyResult:
        payload = proposal.payload
        owner = payload.owner
        data_type = payload.data_type
        entity = await self.store.load_owner(owner)
        if entity is None:
            logger.warning("[detail] owner %s disappeared before apply", owner.key)
            return DetailApplyResult(applied=False)

        item = proposal.item
        existing = entity.find_item(data_type, payload.item_name) or entity.find_item(data_type, item.name)
        now = utc_now_iso()
        item.last_updated = now

        if existing is not None:
            item.name = existing.name
            item.change_log = list(existing.change_log)
            if isinstance(item, Trait) and isinstance(existing, Trait):
                if "kind" not in proposal.declared_fields:
                    item.kind = existing.kind
                if "strength" not in proposal.declared_fields:
                    item.strength = existing.strength
        if not self._is_primary(payload.persona):
            item.change_log.append(build_change_entry(payload.persona, existing, item, now))

        if owner.is_human:
            acting = await self.store.load_persona(payload.persona)
            reconcile_visibility(existing, item, acting, payload.persona)
        else:
            item.persona_groups = list(existing.persona_groups) if existing is not None else []
            item.learned_by = (existing.learned_by if existing is not None else None) or payload.persona
            item.last_changed_by = payload.persona

        original_traits = copy.deepcopy(entity.traits) if data_type is DataType.TRAIT else []
        created = entity.upsert_item(item)

        static_issues: list[str] = []
        if not owner.is_human and data_type is DataType.TRAIT:
            report = validate_static_traits(entity.traits, original_traits)
            if not report.valid:
                static_issues = report.issues
                logger.warning("[detail] %s: static trait guard: %s", owner.key, "; ".join(report.issues))
                entity.traits = merge_with_original_statics(entity.traits, original_traits)

        entity.last_updated = now
        await self.store.save_owner(owner, entity)
        await self.recorder.record_extraction(owner, data_type)

        follow_ups = self._follow_ups(payload, item, created)
        follow_up_ids: list[str] = []
        for task in follow_ups:
            task_id = await self._submit(task)
            if task_id:
                follow_up_ids.append(task_id)

        logger.info(
            "[detail] %s %s %r for %s",
            "created" if created else "updated",
            data_type.value,
            item.name,
            owner.key,
        )
        return DetailApplyResult(
            applied=True,
            created=created,
            item_name=item.name,
            static_issues=static_issues,
            follow_up_ids=follow_up_ids,
        )

    def _follow_ups(self, payload: DetailUpdatePayload, item: DataItem, created: bool) -> list[QueueTask]:
        tasks: list[QueueTask] = []
        owner = payload.owner
        if owner.is_human and not self._is_primary(payload.persona) and item.is_global:
            action = "added a new" if created else "updated"
            tasks.append(
                QueueTask(
                    kind=TaskKind.VALIDATION_REQUEST,
                    priority=Priority.NORMAL,
                    payload=ValidationPayload(
                        validation_kind=ValidationKind.CROSS_PERSONA,
                        owner=owner,
                        persona=self.primary_persona,
                        data_type=payload.data_type,
                        item_name=item.name,
                        context=f'{payload.persona} {action} {payload.data_type.value}: "{item.name}" - {item.description}',
                        source_persona=payload.persona,
                    ),
                )
            )
        if not owner.is_human and payload.data_type is DataType.TRAIT and not self._is_primary(owner.name):
            tasks.append(
                QueueTask(
                    kind=TaskKind.DESCRIPTION_REGEN,
                    priority=Priority.LOW,
                    payload=DescriptionRegenPayload(persona=owner.name),
                )
            )
        return tasks
