from __future__ import annotations

from typing import Any

from .base import HttpChatBackend, LLMCompletion, map_messages


class OllamaBackend(HttpChatBackend):
    backend_name = "ollama"
    endpoint_path = "/api/chat"

    def __init__(self, *, base_url: str, model: str, timeout_seconds: int = 60) -> None:
        super().__init__(base_url=base_url or "http://127.0.0.1:11434", model=model, timeout_seconds=timeout_seconds)

    @staticmethod
    def _extract_completion(data: dict[str, Any]) -> LLMCompletion:
        content = ""
        message = data.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            content = message["content"]
        elif isinstance(data.get("response"), str):
            content = data["response"]
        # Ollama reports "length" in done_reason when num_predict is exhausted.
        finish_reason = data.get("done_reason")
        return LLMCompletion(content=content, finish_reason=str(finish_reason) if finish_reason else None)

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> LLMCompletion:
        options: dict[str, Any] = {"temperature": float(temperature)}
        if int(max_output_tokens) > 0:
            options["num_predict"] = int(max_output_tokens)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": map_messages(messages),
            "stream": False,
            "think": False,
            "options": options,
        }
        data = await self._request(payload)
        return self._extract_completion(data)
