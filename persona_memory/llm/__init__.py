from __future__ import annotations

from .base import ChatBackend, LLMCompletion
from .client import RetryingLLMClient
from .errors import (
    LLMError,
    LLMRequestError,
    MalformedResponseError,
    RateLimitedError,
    TruncatedResponseError,
)
from .json_repair import parse_json_response
from .ollama import OllamaBackend
from .openai_compat import OpenAICompatibleBackend


def build_backend(
    backend: str,
    *,
    base_url: str,
    model: str,
    api_key: str = "",
    timeout_seconds: int = 60,
) -> ChatBackend:
    name = (backend or "").strip().lower()
    if name == "ollama":
        return OllamaBackend(base_url=base_url, model=model, timeout_seconds=timeout_seconds)
    if name == "openai":
        return OpenAICompatibleBackend(base_url=base_url, model=model, api_key=api_key, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unsupported LLM backend: {backend!r}")


__all__ = [
    "ChatBackend",
    "LLMCompletion",
    "LLMError",
    "LLMRequestError",
    "MalformedResponseError",
    "OllamaBackend",
    "OpenAICompatibleBackend",
    "RateLimitedError",
    "RetryingLLMClient",
    "TruncatedResponseError",
    "build_backend",
    "parse_json_response",
]
