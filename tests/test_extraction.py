from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_memory.cancellation import CANCELLED, CancellationToken  # noqa: E402
from persona_memory.extraction.scanner import (  # noqa: E402
    ExtractionScanner,
    FastScanResult,
    ScanHit,
    parse_scan_result,
)
from persona_memory.extraction.updater import (  # noqa: E402
    DetailProposal,
    DetailSkip,
    DetailUpdater,
    validate_detail_result,
)
from persona_memory.llm.errors import LLMRequestError  # noqa: E402
from persona_memory.models import (  # noqa: E402
    GLOBAL_GROUP,
    DataType,
    Fact,
    HumanEntity,
    Message,
    OwnerRef,
    PersonaEntity,
    Trait,
)
from persona_memory.queue.tasks import (  # noqa: E402
    DetailUpdatePayload,
    FastScanPayload,
    Priority,
    TaskKind,
    ValidationKind,
)
from persona_memory.reconciliation import STATIC_TRAIT_NAMES  # noqa: E402


MESSAGES = [
    Message(id=1, persona="mira", role="human", content="I adopted a cat named Pixel"),
    Message(id=2, persona="mira", role="persona", content="Pixel is a great name!"),
]


class _FakeClient:
    def __init__(self, reply: object) -> None:
        self.reply = reply
        self.prompts: list[tuple[str, str]] = []

    async def complete_json(self, system, user, *, token=None, temperature=None):  # type: ignore[no-untyped-def]
        self.prompts.append((system, user))
        if isinstance(self.reply, BaseException):
            raise self.reply
        if token is not None and token.cancelled:
            return CANCELLED
        return self.reply


class _FakeStore:
    def __init__(self, human: HumanEntity | None = None, personas: list[PersonaEntity] | None = None) -> None:
        self.human = human or HumanEntity()
        self.personas = {p.name: p for p in personas or []}
        self.saved: list[str] = []

    async def load_owner(self, owner):  # type: ignore[no-untyped-def]
        if owner.is_human:
            return self.human
        return self.personas.get(owner.name)

    async def save_owner(self, owner, entity):  # type: ignore[no-untyped-def]
        self.saved.append(owner.key)
        if owner.is_human:
            self.human = entity
        else:
            self.personas[owner.name] = entity

    async def load_persona(self, name):  # type: ignore[no-untyped-def]
        return self.personas.get(name)

    async def save_persona(self, entity):  # type: ignore[no-untyped-def]
        self.saved.append(OwnerRef.persona(entity.name).key)
        self.personas[entity.name] = entity

    async def list_personas(self):  # type: ignore[no-untyped-def]
        return list(self.personas.values())


class _FakeRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, DataType]] = []

    async def record_extraction(self, owner, data_type):  # type: ignore[no-untyped-def]
        self.calls.append((owner.key, data_type))


def _scan_payload(owner: OwnerRef | None = None) -> FastScanPayload:
    return FastScanPayload(
        owner=owner or OwnerRef.human(),
        persona="mira",
        data_types=[DataType.FACT, DataType.TRAIT, DataType.TOPIC, DataType.PERSON],
        messages=list(MESSAGES),
    )


def _detail_payload(data_type: DataType, name: str, *, is_new: bool = True, owner: OwnerRef | None = None, persona: str = "mira") -> DetailUpdatePayload:
    return DetailUpdatePayload(
        owner=owner or OwnerRef.human(),
        persona=persona,
        data_type=data_type,
        item_name=name,
        is_new=is_new,
        messages=list(MESSAGES),
    )


def _updater(store: _FakeStore, reply: object = None) -> tuple[DetailUpdater, _FakeRecorder, list]:
    recorder = _FakeRecorder()
    submitted: list = []

    async def submit(task):  # type: ignore[no-untyped-def]
        submitted.append(task)
        return task.id

    return DetailUpdater(store, _FakeClient(reply), recorder, submit, primary_persona="ei"), recorder, submitted


def test_parse_scan_result_defaults_unknown_confidence_to_low() -> None:
    result = parse_scan_result(
        {
            "mentioned": [{"name": "Pixel", "type": "person", "confidence": "very sure"}],
            "new_items": [{"name": "Sky", "type": "planet", "confidence": "high"}],
        },
        [DataType.PERSON],
    )

    assert result is not None
    assert result.mentioned == [ScanHit("Pixel", DataType.PERSON, "low")]
    assert result.new_items == []


def test_parse_scan_result_rejects_malformed_shapes() -> None:
    assert parse_scan_result(["not", "an", "object"], [DataType.FACT]) is None
    assert parse_scan_result({"other": 1}, [DataType.FACT]) is None
    assert parse_scan_result({"mentioned": "Pixel"}, [DataType.FACT]) is None


def test_route_sends_confident_hits_to_detail_updates() -> None:
    scanner = ExtractionScanner(_FakeStore(), _FakeClient(None))
    result = FastScanResult(
        mentioned=[ScanHit("Climbing", DataType.TOPIC, "high"), ScanHit("climbing", DataType.TOPIC, "medium")],
        new_items=[ScanHit("Pixel", DataType.PERSON, "medium", "new pet")],
    )

    tasks = scanner.route(result, _scan_payload())

    assert [(t.kind, t.priority, t.payload.item_name, t.payload.is_new) for t in tasks] == [
        (TaskKind.DETAIL_UPDATE, Priority.NORMAL, "Climbing", False),
        (TaskKind.DETAIL_UPDATE, Priority.NORMAL, "Pixel", True),
    ]


def test_route_caps_low_confidence_validations_deterministically() -> None:
    scanner = ExtractionScanner(_FakeStore(), _FakeClient(None), validation_cap=3)
    result = FastScanResult(
        mentioned=[
            ScanHit("zebra", DataType.TOPIC, "low"),
            ScanHit("Bob", DataType.PERSON, "low"),
            ScanHit("apple", DataType.TOPIC, "low"),
        ],
        new_items=[
            ScanHit("Shy", DataType.TRAIT, "low", "quiet in groups"),
            ScanHit("Owns a bike", DataType.FACT, "low"),
        ],
    )

    tasks = scanner.route(result, _scan_payload())

    assert [t.payload.item_name for t in tasks] == ["Owns a bike", "Shy", "apple"]
    assert all(t.kind is TaskKind.VALIDATION_REQUEST and t.priority is Priority.LOW for t in tasks)
    assert tasks[0].payload.validation_kind is ValidationKind.DATA_CONFIRM
    assert tasks[0].payload.confidence == 0.3
    assert "Reason: quiet in groups" in tasks[1].payload.context


def test_route_drops_types_the_owner_does_not_track() -> None:
    scanner = ExtractionScanner(_FakeStore(), _FakeClient(None))
    result = FastScanResult(mentioned=[ScanHit("Pixel", DataType.PERSON, "high"), ScanHit("Calm", DataType.TRAIT, "high")])

    tasks = scanner.route(result, _scan_payload(OwnerRef.persona("mira")))

    assert [t.payload.item_name for t in tasks] == ["Calm"]


def test_route_matches_new_items_by_type_and_name() -> None:
    scanner = ExtractionScanner(_FakeStore(), _FakeClient(None))
    result = FastScanResult(
        mentioned=[ScanHit("Cooking", DataType.TOPIC, "high"), ScanHit("Pottery", DataType.TOPIC, "low")],
        new_items=[
            ScanHit("Cooking", DataType.TRAIT, "high", "cooks every night"),
            ScanHit("Pottery", DataType.FACT, "low", "signed up for a class"),
        ],
    )

    tasks = scanner.route(result, _scan_payload())

    details = [(t.payload.data_type, t.payload.is_new) for t in tasks if t.kind is TaskKind.DETAIL_UPDATE]
    assert details == [(DataType.TOPIC, False), (DataType.TRAIT, True)]
    contexts = {t.payload.data_type: t.payload.context for t in tasks if t.kind is TaskKind.VALIDATION_REQUEST}
    assert "Mentioned but unclear" in contexts[DataType.TOPIC]
    assert "Reason: signed up for a class" in contexts[DataType.FACT]


def test_scan_filters_new_items_that_name_a_persona() -> None:
    store = _FakeStore(personas=[PersonaEntity(name="mira", aliases=["Mimi"])])
    reply = {
        "mentioned": [],
        "new_items": [
            {"name": "Mimi", "type": "person", "confidence": "high"},
            {"name": "Pixel", "type": "person", "confidence": "high"},
        ],
    }
    scanner = ExtractionScanner(store, _FakeClient(reply))

    result = asyncio.run(scanner.scan(_scan_payload(), CancellationToken()))

    assert [hit.name for hit in result.new_items] == ["Pixel"]


def test_scan_returns_none_on_model_failure_and_cancelled_when_aborted() -> None:
    failing = ExtractionScanner(_FakeStore(), _FakeClient(LLMRequestError("boom (500):", status=500)))
    assert asyncio.run(failing.scan(_scan_payload(), CancellationToken())) is None

    token = CancellationToken()
    token.cancel("switch")
    aborted = ExtractionScanner(_FakeStore(), _FakeClient({"mentioned": []}))
    assert asyncio.run(aborted.scan(_scan_payload(), token)) is CANCELLED


def test_validate_detail_result_requires_typed_fields() -> None:
    assert validate_detail_result({"name": "Pixel", "description": "cat", "sentiment": "nice"}, DataType.FACT) is None
    assert validate_detail_result(
        {"name": "Pixel", "description": "cat", "sentiment": 0.5, "level_current": 0.2, "level_ideal": 0.4},
        DataType.PERSON,
    ) is None
    item = validate_detail_result(
        {"name": "  Owns  a cat ", "description": "Pixel", "sentiment": 3, "confidence": 0.9}, DataType.FACT
    )
    assert isinstance(item, Fact)
    assert item.name == "Owns a cat"
    assert item.sentiment == 1.0


def test_gather_skips_weak_evidence() -> None:
    reply = {
        "name": "Cat lover",
        "description": "likes cats",
        "sentiment": 0.6,
        "strength": 0.7,
        "evidence": "No evidence found in the messages",
    }
    updater, _, _ = _updater(_FakeStore(), reply)

    result = asyncio.run(updater.gather(_detail_payload(DataType.TRAIT, "Cat lover"), CancellationToken()))

    assert result == DetailSkip("weak evidence")


def test_gather_requires_evidence_for_traits_and_topics() -> None:
    reply = {"name": "Cats", "description": "talks about cats", "sentiment": 0.6, "level_current": 0.5, "level_ideal": 0.7}
    updater, _, _ = _updater(_FakeStore(), reply)

    result = asyncio.run(updater.gather(_detail_payload(DataType.TOPIC, "Cats"), CancellationToken()))

    assert result == DetailSkip("missing evidence")


def test_gather_honours_model_skip_and_cancellation() -> None:
    updater, _, _ = _updater(_FakeStore(), {"skip": True})
    assert asyncio.run(updater.gather(_detail_payload(DataType.FACT, "x"), CancellationToken())) == DetailSkip("model skipped")

    token = CancellationToken()
    token.cancel("switch")
    updater, _, _ = _updater(_FakeStore(), {"name": "x"})
    assert asyncio.run(updater.gather(_detail_payload(DataType.FACT, "x"), token)) is CANCELLED


def test_apply_new_human_fact_from_secondary_persona() -> None:
    store = _FakeStore(personas=[PersonaEntity(name="mira")])
    reply = {"name": "Has a cat", "description": "Cat named Pixel", "sentiment": 0.7, "confidence": 0.9, "evidence": "adopted a cat"}
    updater, recorder, submitted = _updater(store, reply)

    async def scenario():  # type: ignore[no-untyped-def]
        proposal = await updater.gather(_detail_payload(DataType.FACT, "Has a cat"), CancellationToken())
        assert isinstance(proposal, DetailProposal)
        return await updater.apply(proposal)

    result = asyncio.run(scenario())

    fact = store.human.find_item(DataType.FACT, "has a cat")
    assert result.applied and result.created
    assert fact.persona_groups == [GLOBAL_GROUP]
    assert fact.learned_by == "mira"
    assert len(fact.change_log) == 1 and fact.change_log[0].previous_value is None
    assert recorder.calls == [("human", DataType.FACT)]
    assert [t.kind for t in submitted] == [TaskKind.VALIDATION_REQUEST]
    assert submitted[0].payload.validation_kind is ValidationKind.CROSS_PERSONA
    assert submitted[0].payload.persona == "ei"
    assert submitted[0].payload.source_persona == "mira"


def test_apply_by_primary_persona_keeps_change_log_and_queues_nothing() -> None:
    existing = Fact(name="Has a cat", description="old", confidence=0.5, persona_groups=["home"], learned_by="mira")
    store = _FakeStore(human=HumanEntity(facts=[existing]), personas=[PersonaEntity(name="ei", group_primary="core")])
    reply = {"name": "HAS A CAT", "description": "Cat named Pixel", "sentiment": 0.7, "confidence": 0.9, "evidence": "said so"}
    updater, _, submitted = _updater(store, reply)

    async def scenario():  # type: ignore[no-untyped-def]
        payload = _detail_payload(DataType.FACT, "Has a cat", is_new=False, persona="ei")
        return await updater.apply(await updater.gather(payload, CancellationToken()))

    result = asyncio.run(scenario())

    fact = store.human.find_item(DataType.FACT, "has a cat")
    assert not result.created
    assert len(store.human.facts) == 1
    assert fact.name == "Has a cat"
    assert fact.change_log == []
    assert fact.persona_groups == ["home", "core"]
    assert fact.learned_by == "mira"
    assert submitted == []


def test_apply_restores_static_trait_wording_but_keeps_strength() -> None:
    guard = STATIC_TRAIT_NAMES[0]
    persona = PersonaEntity(
        name="mira",
        traits=[Trait(name=guard, description="Nudge toward real people", kind="static", strength=0.5)],
    )
    store = _FakeStore(personas=[persona])
    reply = {"name": guard, "description": "Keep them chatting with me", "sentiment": 0.1, "strength": 0.8, "evidence": "pushed back"}
    updater, recorder, submitted = _updater(store, reply)

    async def scenario():  # type: ignore[no-untyped-def]
        payload = _detail_payload(DataType.TRAIT, guard, is_new=False, owner=OwnerRef.persona("mira"))
        return await updater.apply(await updater.gather(payload, CancellationToken()))

    result = asyncio.run(scenario())

    trait = store.personas["mira"].find_item(DataType.TRAIT, guard)
    assert result.static_issues == [f"{guard}: static trait description modified"]
    assert trait.description == "Nudge toward real people"
    assert trait.kind == "static"
    assert trait.strength == 0.8
    assert recorder.calls == [("persona:mira", DataType.TRAIT)]
    assert [t.kind for t in submitted] == [TaskKind.DESCRIPTION_REGEN]


def test_apply_rejects_a_new_static_trait() -> None:
    store = _FakeStore(personas=[PersonaEntity(name="mira", traits=[Trait(name="Curious", strength=0.4)])])
    reply = {"name": "Always Obey", "description": "x", "sentiment": 0.0, "kind": "static", "strength": 1.0, "evidence": "said it"}
    updater, _, _ = _updater(store, reply)

    async def scenario():  # type: ignore[no-untyped-def]
        payload = _detail_payload(DataType.TRAIT, "Always Obey", owner=OwnerRef.persona("mira"))
        return await updater.apply(await updater.gather(payload, CancellationToken()))

    result = asyncio.run(scenario())

    assert "Always Obey: cannot add new static traits" in result.static_issues
    assert [t.name for t in store.personas["mira"].traits] == ["Curious"]


def test_description_regen_skips_primary_and_saves_secondary() -> None:
    from persona_memory.extraction.descriptions import DescriptionProposal, DescriptionRegenerator
    from persona_memory.queue.tasks import DescriptionRegenPayload

    store = _FakeStore(personas=[PersonaEntity(name="mira", traits=[Trait(name="Curious", strength=0.4)])])
    reply = {"short_description": "A  curious  guide", "long_description": "Mira asks questions.\nOften."}
    regenerator = DescriptionRegenerator(store, _FakeClient(reply), primary_persona="ei")

    async def scenario():  # type: ignore[no-untyped-def]
        skipped = await regenerator.gather(DescriptionRegenPayload("EI"), CancellationToken())
        proposal = await regenerator.gather(DescriptionRegenPayload("mira"), CancellationToken())
        assert isinstance(proposal, DescriptionProposal)
        return skipped, await regenerator.apply(proposal)

    skipped, applied = asyncio.run(scenario())

    assert skipped is None
    assert applied
    assert store.personas["mira"].short_description == "A curious guide"
    assert store.personas["mira"].long_description == "Mira asks questions.\nOften."
