from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_memory.models import (  # noqa: E402
    ChangeLogEntry,
    DataType,
    Fact,
    HumanEntity,
    OwnerRef,
    PersonaEntity,
    Topic,
    Trait,
)
from persona_memory.queue.tasks import (  # noqa: E402
    DescriptionRegenPayload,
    Priority,
    QueueTask,
    TaskKind,
)
from persona_memory.store import MemoryStore  # noqa: E402


def _store(tmp_path: Path) -> MemoryStore:
    store = MemoryStore(tmp_path / "memory.db")
    asyncio.run(store.init())
    return store


def test_missing_human_loads_empty_and_missing_persona_is_none(tmp_path: Path) -> None:
    store = _store(tmp_path)

    human = asyncio.run(store.load_human())

    assert human.facts == [] and human.people == []
    assert asyncio.run(store.load_persona("nobody")) is None


def test_owner_documents_survive_a_save_and_reload(tmp_path: Path) -> None:
    store = _store(tmp_path)
    human = HumanEntity(
        facts=[
            Fact(
                name="Lives in Lisbon",
                description="Moved there in spring",
                confidence=0.8,
                persona_groups=["*"],
                change_log=[ChangeLogEntry(date="2026-01-01T00:00:00.000000Z", persona="mira", delta_size=12)],
            )
        ],
        topics=[Topic(name="Climbing", level_current=0.4, level_ideal=0.9)],
    )
    persona = PersonaEntity(
        name="mira",
        aliases=["Mir"],
        group_primary="work",
        traits=[Trait(name="Direct", strength=0.6, kind="static")],
    )

    async def scenario():  # type: ignore[no-untyped-def]
        await store.save_human(human)
        await store.save_persona(persona)
        return await store.load_human(), await store.load_persona("mira"), await store.list_personas()

    loaded_human, loaded_persona, personas = asyncio.run(scenario())

    fact = loaded_human.find_item(DataType.FACT, "lives in lisbon")
    assert isinstance(fact, Fact)
    assert fact.confidence == 0.8
    assert fact.change_log[0].persona == "mira"
    assert loaded_human.find_item(DataType.TOPIC, "Climbing").level_ideal == 0.9
    assert loaded_persona.group_primary == "work"
    assert loaded_persona.traits[0].is_static
    assert [p.name for p in personas] == ["mira"]


def test_messages_come_back_oldest_first_and_can_be_marked(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def scenario():  # type: ignore[no-untyped-def]
        first = await store.add_message("mira", "human", "hi")
        await store.add_message("mira", "persona", "hello")
        await store.add_message("otto", "human", "elsewhere")
        await store.mark_messages_extracted(OwnerRef.human(), [first.id])
        return (
            await store.recent_messages("mira", 10, owner=OwnerRef.human()),
            await store.recent_messages("mira", 10, owner=OwnerRef.human(), pending_only=True),
            await store.recent_messages("mira", 10, owner=OwnerRef.persona("mira"), pending_only=True),
        )

    everything, pending, persona_pending = asyncio.run(scenario())

    assert [m.content for m in everything] == ["hi", "hello"]
    assert everything[0].extracted
    assert [m.content for m in pending] == ["hello"]
    assert [m.content for m in persona_pending] == ["hi", "hello"]


def test_pending_messages_need_an_owner(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValueError, match="owner"):
        asyncio.run(store.recent_messages("mira", 10, pending_only=True))


def test_add_message_rejects_unknown_role(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(store.add_message("mira", "system", "nope"))


def test_extraction_state_counts_and_resets(tmp_path: Path) -> None:
    store = _store(tmp_path)
    owner = OwnerRef.human()

    async def scenario():  # type: ignore[no-untyped-def]
        await store.increment_message_counts(owner, [DataType.FACT, DataType.TOPIC])
        await store.increment_message_counts(owner, [DataType.FACT])
        await store.record_extraction(owner, DataType.TOPIC, "2026-02-01T00:00:00.000000Z")
        return await store.load_extraction_state(owner)

    state = asyncio.run(scenario())

    assert state[DataType.FACT].messages_since_last_extract == 2
    assert state[DataType.FACT].total_extractions == 0
    assert state[DataType.TOPIC].messages_since_last_extract == 0
    assert state[DataType.TOPIC].total_extractions == 1
    assert state[DataType.TOPIC].last_extraction == "2026-02-01T00:00:00.000000Z"
    assert state[DataType.PERSON].total_extractions == 0


def test_queue_rows_order_by_priority_and_move_to_dead_letters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    low = QueueTask(TaskKind.DESCRIPTION_REGEN, Priority.LOW, DescriptionRegenPayload("a"))
    high = QueueTask(TaskKind.DESCRIPTION_REGEN, Priority.HIGH, DescriptionRegenPayload("b"))

    async def scenario():  # type: ignore[no-untyped-def]
        await store.insert_queue_item(low)
        await store.insert_queue_item(high)
        head = await store.next_queue_item()
        attempts = await store.record_queue_failure(high.id, "timeout")
        moved = await store.dead_letter_queue_item(high.id, "timeout")
        return head, attempts, moved, await store.count_queue_items(), await store.list_dead_letters()

    head, attempts, moved, remaining, dead = asyncio.run(scenario())

    assert head["id"] == high.id
    assert head["payload"] == {"persona": "b"}
    assert attempts == 1
    assert moved
    assert remaining == 1
    assert dead[0]["item_id"] == high.id
    assert dead[0]["attempts"] == 1


def test_schema_version_mismatch_needs_explicit_reset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    store = _store(tmp_path)
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 99")

    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    with pytest.raises(RuntimeError):
        asyncio.run(store.init())

    monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(store.init())
    asyncio.run(store.ping())
