from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..cancellation import CANCELLED, CancellationToken
from ..common import collapse_spaces, normalize_name, utc_now_iso
from ..llm.client import RetryingLLMClient
from ..llm.errors import LLMError
from ..models import PersonaEntity
from ..prompts.extraction import build_description_prompts
from ..queue.tasks import DescriptionRegenPayload

logger = logging.getLogger("persona_memory.descriptions")


@dataclass(slots=True)
class DescriptionProposal:
    persona: str
    short_description: str
    long_description: str


class _PersonaStore(Protocol):
    async def load_persona(self, name: str) -> PersonaEntity | None: ...

    async def save_persona(self, entity: PersonaEntity) -> None: ...


class DescriptionRegenerator:
    def __init__(
        self,
        store: _PersonaStore,
        client: RetryingLLMClient,
        *,
        primary_persona: str = "ei",
        temperature: float = 0.5,
    ) -> None:
        self.store = store
        self.client = client
        self.primary_persona = primary_persona
        self.temperature = temperature

    async def gather(self, payload: DescriptionRegenPayload, token: CancellationToken) -> DescriptionProposal | None | object:
        if normalize_name(payload.persona) == normalize_name(self.primary_persona):
            return None
        persona = await self.store.load_persona(payload.persona)
        if persona is None:
            logger.warning("[descriptions] persona %r not found", payload.persona)
            return None
        system, user = build_description_prompts(persona)
        try:
            raw = await self.client.complete_json(system, user, token=token, temperature=self.temperature)
        except LLMError as exc:
            logger.warning("[descriptions] %s: model call failed: %s", payload.persona, exc)
            return None
        if raw is CANCELLED:
            return CANCELLED
        if not isinstance(raw, dict):
            return None
        short = collapse_spaces(str(raw.get("short_description") or ""))
        long = str(raw.get("long_description") or "").strip()
        if not short or not long:
            logger.warning("[descriptions] %s: incomplete descriptions returned", payload.persona)
            return None
        return DescriptionProposal(persona=persona.name, short_description=short, long_description=long)

    async def apply(self, proposal: DescriptionProposal) -> bool:
        persona = await self.store.load_persona(proposal.persona)
        if persona is None:
            return False
        persona.short_description = proposal.short_description
        persona.long_description = proposal.long_description
        persona.last_updated = utc_now_iso()
        await self.store.save_persona(persona)
        logger.info("[descriptions] regenerated descriptions for %s", proposal.persona)
        return True
