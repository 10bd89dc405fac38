from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Iterable

from .models import GLOBAL_GROUP, DataItem, PersonaEntity, Trait

# Guardrail traits seeded into every persona. Their wording is fixed; only levels may move.
STATIC_TRAIT_NAMES: tuple[str, ...] = (
    "Promote Human-to-Human Interaction",
    "Respect Conversational Boundaries",
    "Maintain Identity Coherence",
    "Emotional Authenticity Over Sycophancy",
    "Transparency About Nature",
    "Encourage Growth Over Comfort",
    "Context-Aware Proactive Timing",
)


@dataclass(slots=True)
class StaticValidationReport:
    issues: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


def _static_traits(items: Iterable[DataItem]) -> list[Trait]:
    return [i for i in items if isinstance(i, Trait) and i.is_static]


def validate_static_traits(
    proposed: list[DataItem],
    original: list[DataItem],
    static_names: Iterable[str] = STATIC_TRAIT_NAMES,
) -> StaticValidationReport:
    """Check that static traits survive a proposed trait list untouched.

    A rename shows up as the old name missing plus a new static item.
    """
    report = StaticValidationReport()
    original_by_name = {t.name: t for t in original if isinstance(t, Trait)}
    original_statics = {t.name for t in _static_traits(original)}
    proposed_names = {t.name for t in proposed}

    # Only guardrails the owner actually carries are required to stay.
    for name in static_names:
        if name in original_statics and name not in proposed_names:
            report.issues.append(f"Missing static trait: {name}")
    for name in sorted(original_statics - set(static_names)):
        if name not in proposed_names:
            report.issues.append(f"Missing static trait: {name}")

    for item in proposed:
        if not isinstance(item, Trait):
            continue
        before = original_by_name.get(item.name)
        if before is not None and before.is_static:
            if not item.is_static:
                report.issues.append(f"{item.name}: kind changed from static")
            if item.description != before.description:
                report.issues.append(f"{item.name}: static trait description modified")
        if item.is_static and before is None:
            report.issues.append(f"{item.name}: cannot add new static traits")
    return report


def merge_with_original_statics(proposed: list[DataItem], original: list[DataItem]) -> list[DataItem]:
    """Restore original statics, keeping only their numeric levels from ``proposed``."""
    originals = _static_traits(original)
    static_names = {t.name for t in originals}
    merged: list[DataItem] = []
    for base in originals:
        restored = copy.deepcopy(base)
        match = next(
            (p for p in proposed if isinstance(p, Trait) and p.is_static and p.name == base.name),
            None,
        )
        if match is not None:
            restored.sentiment = match.sentiment
            restored.strength = match.strength
            restored.last_updated = match.last_updated or base.last_updated
        merged.append(restored)
    for item in proposed:
        if isinstance(item, Trait) and item.is_static:
            continue
        if item.name in static_names:
            continue
        merged.append(item)
    return merged


def reconcile_visibility(
    existing: DataItem | None,
    proposed: DataItem,
    acting_persona: PersonaEntity | None,
    persona_name: str,
) -> DataItem:
    """Recompute bookkeeping fields of a human item from persisted state and the acting persona.

    Whatever the model put in persona_groups or learned_by is discarded.
    """
    group = acting_persona.group_primary if acting_persona is not None else None
    if existing is None:
        proposed.persona_groups = [group] if group else [GLOBAL_GROUP]
        proposed.learned_by = persona_name
    else:
        if existing.is_global:
            proposed.persona_groups = [GLOBAL_GROUP]
        else:
            groups = list(existing.persona_groups)
            if group and group not in groups:
                groups.append(group)
            proposed.persona_groups = groups
        proposed.learned_by = existing.learned_by or persona_name
    proposed.last_changed_by = persona_name
    return proposed


def reconcile_item_groups(
    existing_items: list[DataItem],
    updated_items: list[DataItem],
    acting_persona: PersonaEntity | None,
    persona_name: str,
) -> list[DataItem]:
    by_key = {item.key: item for item in existing_items}
    return [reconcile_visibility(by_key.get(item.key), item, acting_persona, persona_name) for item in updated_items]
