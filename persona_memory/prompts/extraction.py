from __future__ import annotations

import json
from typing import Iterable

from ..models import DataItem, DataType, Message, OwnerRef, PersonaEntity

_PROMPTS = {
    "scan_system": (
        "You scan a conversation and flag which remembered items it touched. {subject}\n"
        "Do not analyse or describe items. Only detect them.\n\n"
        "Known AI personas (never report these as people):\n{personas}\n\n"
        "Confidence: high = discussed explicitly, medium = clearly referenced, low = possibly relevant.\n"
        "Suggest new items conservatively: skip greetings, small talk, jokes, one-off mentions "
        "and roleplay that reveals nothing real.\n\n"
        "Item types you may report:\n{type_hints}\n\n"
        "Return JSON only."
    ),
    "scan_user": (
        "## Known items\n{items}\n\n"
        "## Conversation\n{conversation}\n\n"
        "## Task\nList mentioned known items and suggest new ones. Return JSON:\n"
        '{{"mentioned": [{{"name": "...", "type": "{types}", "confidence": "high|medium|low"}}], '
        '"new_items": [{{"name": "...", "type": "{types}", "confidence": "high|medium|low", "reason": "..."}}]}}'
    ),
    "detail_system": (
        "You update exactly one {type_label} {subject}.\n"
        "{type_guidance}\n\n"
        "Fields:\n{fields}\n\n"
        "Quote or paraphrase the message that supports the update in an \"evidence\" field. "
        "If the conversation does not demonstrate this item, return {{\"skip\": true}} instead."
    ),
    "detail_user": (
        "## Current data\n{current}\n\n"
        "## Conversation\n{conversation}\n\n"
        "## Task\n{task}\n\n"
        "Return JSON:\n{shape}"
    ),
    "description_system": (
        "You write profile descriptions for the AI persona '{persona}'. "
        "short_description is one sentence, long_description is one paragraph. "
        "Describe personality and interests as shown by the traits and topics. Return JSON only."
    ),
    "description_user": (
        "## Traits\n{traits}\n\n## Topics\n{topics}\n\n"
        "## Current descriptions\nshort: {short}\nlong: {long}\n\n"
        'Return JSON: {{"short_description": "...", "long_description": "..."}}'
    ),
}

_TYPE_HINTS_HUMAN = {
    DataType.FACT: "- fact: biographical data such as birthday, location, job, allergies",
    DataType.TRAIT: "- trait: personality patterns and communication style the HUMAN shows",
    DataType.TOPIC: "- topic: interests and subjects the HUMAN discusses or cares about",
    DataType.PERSON: "- person: real people in the human's life, never AI personas",
}

_TYPE_HINTS_PERSONA = {
    DataType.TRAIT: "- trait: behaviour the AI PERSONA shows in its own replies, not the human's traits",
    DataType.TOPIC: "- topic: subjects the AI PERSONA engages with or cares about, not merely mentioned by the human",
}

_TYPE_GUIDANCE = {
    DataType.FACT: (
        "Facts are stable biographical data. Set confidence from how explicitly it was stated: "
        "explicit 0.9-1.0, clear implication 0.7-0.9, inference 0.4-0.7."
    ),
    DataType.TRAIT: "Traits are lasting behavioural patterns. strength is how strongly the pattern shows.",
    DataType.TOPIC: (
        "level_current is how much the subject was engaged recently, level_ideal is how much "
        "engagement is wanted. sentiment is how the owner feels about it."
    ),
    DataType.PERSON: (
        "People are real humans in the user's life. relationship names the connection "
        "(friend, sister, coworker). Never describe an AI persona here."
    ),
}

_FIELDS = {
    DataType.FACT: "- name\n- description\n- sentiment (-1..1)\n- confidence (0..1)",
    DataType.TRAIT: "- name\n- description\n- sentiment (-1..1)\n- strength (0..1, optional)",
    DataType.TOPIC: "- name\n- description\n- sentiment (-1..1)\n- level_current (0..1)\n- level_ideal (0..1)",
    DataType.PERSON: (
        "- name\n- description\n- relationship\n- sentiment (-1..1)\n- level_current (0..1)\n- level_ideal (0..1)"
    ),
}

_SHAPES = {
    DataType.FACT: {"name": "...", "description": "...", "sentiment": 0.0, "confidence": 0.8, "evidence": "..."},
    DataType.TRAIT: {"name": "...", "description": "...", "sentiment": 0.0, "strength": 0.5, "evidence": "..."},
    DataType.TOPIC: {
        "name": "...",
        "description": "...",
        "sentiment": 0.0,
        "level_current": 0.5,
        "level_ideal": 0.5,
        "evidence": "...",
    },
    DataType.PERSON: {
        "name": "...",
        "description": "...",
        "relationship": "...",
        "sentiment": 0.0,
        "level_current": 0.5,
        "level_ideal": 0.5,
        "evidence": "...",
    },
}


def format_conversation(messages: Iterable[Message]) -> str:
    lines = [f"{m.speaker_label()}: {m.content}" for m in messages]
    return "\n\n".join(lines) if lines else "(no messages)"


def _subject(owner: OwnerRef, persona: str) -> str:
    if owner.is_human:
        return "for the HUMAN USER"
    return f"for the AI PERSONA '{persona}' (not the human)"


def build_scan_prompts(
    owner: OwnerRef,
    persona: str,
    known_items: list[tuple[DataType, str]],
    messages: list[Message],
    data_types: list[DataType],
    persona_names: list[str],
) -> tuple[str, str]:
    hints = _TYPE_HINTS_HUMAN if owner.is_human else _TYPE_HINTS_PERSONA
    system = _PROMPTS["scan_system"].format(
        subject=f"You are scanning {_subject(owner, persona)}.",
        personas="\n".join(f"- {name}" for name in persona_names) or "(none)",
        type_hints="\n".join(hints[t] for t in data_types if t in hints),
    )
    wanted = set(data_types)
    items = "\n".join(f"- [{t.value}] {name}" for t, name in known_items if t in wanted) or "(none yet)"
    user = _PROMPTS["scan_user"].format(
        items=items,
        conversation=format_conversation(messages),
        types="|".join(t.value for t in data_types),
    )
    return system, user


def build_detail_prompts(
    owner: OwnerRef,
    persona: str,
    data_type: DataType,
    item_name: str,
    existing: DataItem | None,
    messages: list[Message],
    is_new: bool,
) -> tuple[str, str]:
    system = _PROMPTS["detail_system"].format(
        type_label=data_type.value.upper(),
        subject=_subject(owner, persona),
        type_guidance=_TYPE_GUIDANCE[data_type],
        fields=_FIELDS[data_type],
    )
    if existing is not None:
        current = json.dumps(existing.to_dict(include_change_log=False), ensure_ascii=False, indent=2)
    else:
        current = f'(new {data_type.value}: "{item_name}", create it from the conversation)'
    if is_new or existing is None:
        task = f'Create the {data_type.value} "{item_name}" from the conversation.'
    else:
        task = f"Update this {data_type.value} only if the conversation adds information."
    user = _PROMPTS["detail_user"].format(
        current=current,
        conversation=format_conversation(messages),
        task=task,
        shape=json.dumps(_SHAPES[data_type], ensure_ascii=False),
    )
    return system, user


def build_description_prompts(persona: PersonaEntity) -> tuple[str, str]:
    def _lines(items: list[DataItem]) -> str:
        return "\n".join(f"- {i.name}: {i.description}" for i in items) or "(none)"

    system = _PROMPTS["description_system"].format(persona=persona.name)
    user = _PROMPTS["description_user"].format(
        traits=_lines(persona.traits),
        topics=_lines(persona.topics),
        short=persona.short_description or "(empty)",
        long=persona.long_description or "(empty)",
    )
    return system, user
