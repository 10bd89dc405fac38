from __future__ import annotations

import logging
import re
from typing import Any

from ..cancellation import CANCELLED, CancellationToken
from .base import ChatBackend, LLMCompletion
from .errors import RateLimitedError, TruncatedResponseError
from .json_repair import clean_response_content, parse_json_response

logger = logging.getLogger("persona_memory.llm")

_JSON_INSTRUCTION = "Return only valid JSON with no markdown and no additional commentary."
_RAW_JSON_RETRY_INSTRUCTION = (
    "Your previous reply could not be parsed. Respond with raw JSON only: "
    "no prose, no markdown fences, no comments, no trailing commas."
)
# Models sometimes answer a prompt with a placeholder instead of content.
_NO_MESSAGE_RE = re.compile(r"^\s*[\[(]?\s*no\s+(?:new\s+)?message\s*[\])]?\s*\.?\s*$", re.IGNORECASE)


class RetryingLLMClient:
    """Wraps a single-attempt chat backend with rate-limit backoff and JSON repair.

    Every public call accepts a :class:`CancellationToken`. The token is checked
    before each attempt and after each backend call; backoff waits end as soon
    as the token is cancelled. Cancelled calls return ``CANCELLED``.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
    ) -> None:
        self.backend = backend
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)

    async def start(self) -> None:
        await self.backend.start()

    async def close(self) -> None:
        await self.backend.close()

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2 ** max(0, attempt - 1))

    async def _call(
        self,
        messages: list[dict[str, str]],
        token: CancellationToken,
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> LLMCompletion | object:
        for attempt in range(1, self.max_attempts + 1):
            if token.cancelled:
                return CANCELLED
            try:
                completion = await self.backend.chat(
                    messages,
                    temperature=self.temperature if temperature is None else temperature,
                    max_output_tokens=self.max_output_tokens if max_output_tokens is None else max_output_tokens,
                )
            except RateLimitedError as exc:
                if attempt >= self.max_attempts:
                    logger.warning("[llm] rate limited, giving up after %s attempts", attempt)
                    raise
                delay = self.backoff_delay(attempt)
                logger.info("[llm] rate limited (attempt %s/%s), backing off %.1fs: %s", attempt, self.max_attempts, delay, exc)
                if not await token.sleep(delay):
                    return CANCELLED
                continue
            if token.cancelled:
                return CANCELLED
            if completion.truncated:
                raise TruncatedResponseError(completion.finish_reason or "length")
            return completion
        raise AssertionError("unreachable: retry loop exhausted without result")

    @staticmethod
    def _build_messages(system: str, user: str, *extra_system: str) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": system}]
        for line in extra_system:
            messages.append({"role": "system", "content": line})
        messages.append({"role": "user", "content": user})
        return messages

    async def complete(
        self,
        system: str,
        user: str,
        *,
        token: CancellationToken | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str | None | object:
        token = token or CancellationToken()
        result = await self._call(self._build_messages(system, user), token, temperature, max_output_tokens)
        if result is CANCELLED:
            return CANCELLED
        assert isinstance(result, LLMCompletion)
        content = clean_response_content(result.content)
        if not content or _NO_MESSAGE_RE.match(content):
            return None
        return content

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        token: CancellationToken | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> Any | None:
        token = token or CancellationToken()
        messages = self._build_messages(system, user, _JSON_INSTRUCTION)
        result = await self._call(messages, token, temperature, max_output_tokens)
        if result is CANCELLED:
            return CANCELLED
        assert isinstance(result, LLMCompletion)
        parsed = parse_json_response(result.content)
        if parsed is not None:
            return parsed

        logger.warning("[llm] unparseable JSON reply (%s chars), retrying once", len(result.content or ""))
        retry_messages = self._build_messages(system, user, _JSON_INSTRUCTION, _RAW_JSON_RETRY_INSTRUCTION)
        result = await self._call(retry_messages, token, temperature, max_output_tokens)
        if result is CANCELLED:
            return CANCELLED
        assert isinstance(result, LLMCompletion)
        parsed = parse_json_response(result.content)
        if parsed is None:
            logger.warning("[llm] JSON still unparseable after retry, giving up")
        return parsed
