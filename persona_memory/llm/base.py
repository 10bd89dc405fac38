from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from .errors import LLMRequestError, MalformedResponseError, RateLimitedError


TRUNCATION_FINISH_REASONS = frozenset({"length", "max_tokens"})


@dataclass(slots=True)
class LLMCompletion:
    content: str
    finish_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return (self.finish_reason or "").strip().lower() in TRUNCATION_FINISH_REASONS


class ChatBackend(Protocol):
    backend_name: str

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> LLMCompletion: ...


def map_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    mapped: list[dict[str, str]] = []
    for msg in messages:
        role = str(msg.get("role", "")).strip().lower() or "user"
        if role not in {"system", "user", "assistant"}:
            role = "user"
        content = str(msg.get("content", "")).strip()
        if not content:
            continue
        mapped.append({"role": role, "content": content})
    return mapped


def _retry_after_seconds(response: aiohttp.ClientResponse) -> float | None:
    raw = response.headers.get("Retry-After", "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class HttpChatBackend:
    """Shared aiohttp session handling. One POST per ``chat`` call, no retries here."""

    backend_name = "http"
    endpoint_path = ""

    def __init__(self, *, base_url: str, model: str, timeout_seconds: int = 60) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError(f"{self.backend_name} model cannot be empty")
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _endpoint(self) -> str:
        return f"{self.base_url}{self.endpoint_path}"

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        async with self._session.post(self._endpoint(), json=payload) as response:
            text = await response.text()
            if response.status == 429:
                raise RateLimitedError(
                    f"{self.backend_name} rate limited: {text[:300]}",
                    retry_after=_retry_after_seconds(response),
                )
            if response.status != 200:
                raise LLMRequestError(
                    f"{self.backend_name} error ({response.status}): {text[:500]}",
                    status=response.status,
                )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"{self.backend_name} returned non-JSON body") from exc
        if not isinstance(parsed, dict):
            raise MalformedResponseError(f"{self.backend_name} returned non-object JSON response")
        return parsed
