from __future__ import annotations

from typing import Any

from .base import HttpChatBackend, LLMCompletion, map_messages
from .errors import MalformedResponseError


class OpenAICompatibleBackend(HttpChatBackend):
    """Any server that speaks the ``/chat/completions`` dialect (OpenAI, LM Studio, vLLM, llama.cpp)."""

    backend_name = "openai"
    endpoint_path = "/chat/completions"

    def __init__(self, *, base_url: str, model: str, api_key: str = "", timeout_seconds: int = 60) -> None:
        self.api_key = (api_key or "").strip()
        super().__init__(base_url=base_url or "https://api.openai.com/v1", model=model, timeout_seconds=timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _extract_completion(data: dict[str, Any]) -> LLMCompletion:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise MalformedResponseError("openai returned no choices")
        first = choices[0]
        message = first.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        finish_reason = first.get("finish_reason")
        return LLMCompletion(
            content=content if isinstance(content, str) else "",
            finish_reason=str(finish_reason) if finish_reason else None,
        )

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> LLMCompletion:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": map_messages(messages),
            "temperature": float(temperature),
            "stream": False,
        }
        if int(max_output_tokens) > 0:
            payload["max_tokens"] = int(max_output_tokens)
        data = await self._request(payload)
        return self._extract_completion(data)
