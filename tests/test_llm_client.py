from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_memory.cancellation import CANCELLED, CancellationToken  # noqa: E402
from persona_memory.llm import build_backend  # noqa: E402
from persona_memory.llm.base import LLMCompletion, map_messages  # noqa: E402
from persona_memory.llm.client import RetryingLLMClient  # noqa: E402
from persona_memory.llm.errors import RateLimitedError, TruncatedResponseError  # noqa: E402
from persona_memory.llm.json_repair import clean_response_content, parse_json_response  # noqa: E402


class _FakeBackend:
    backend_name = "fake"

    def __init__(self, replies: list[object]) -> None:
        self.replies = list(replies)
        self.calls: list[list[dict[str, str]]] = []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def chat(self, messages, *, temperature, max_output_tokens):  # type: ignore[no-untyped-def]
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, LLMCompletion):
            return reply
        return LLMCompletion(str(reply), "stop")


def _client(backend: _FakeBackend) -> RetryingLLMClient:
    return RetryingLLMClient(backend, backoff_base_seconds=0.0)


def test_rate_limit_is_retried_until_success() -> None:
    backend = _FakeBackend([RateLimitedError(), RateLimitedError(), "hello there"])

    result = asyncio.run(_client(backend).complete("sys", "user"))

    assert result == "hello there"
    assert len(backend.calls) == 3


def test_rate_limit_on_every_attempt_raises() -> None:
    backend = _FakeBackend([RateLimitedError(), RateLimitedError(), RateLimitedError()])

    with pytest.raises(RateLimitedError):
        asyncio.run(_client(backend).complete("sys", "user"))
    assert len(backend.calls) == 3


def test_backoff_doubles_per_attempt() -> None:
    client = RetryingLLMClient(_FakeBackend([]), backoff_base_seconds=1.0)

    assert [client.backoff_delay(n) for n in (1, 2)] == [1.0, 2.0]


def test_truncated_completion_raises() -> None:
    backend = _FakeBackend([LLMCompletion('{"name": "half', "length")])

    with pytest.raises(TruncatedResponseError):
        asyncio.run(_client(backend).complete_json("sys", "user"))
    assert len(backend.calls) == 1


def test_cancelled_token_short_circuits_before_calling_backend() -> None:
    backend = _FakeBackend(["never"])
    token = CancellationToken()
    token.cancel("test")

    result = asyncio.run(_client(backend).complete("sys", "user", token=token))

    assert result is CANCELLED
    assert backend.calls == []


def test_cancel_during_backoff_returns_cancelled() -> None:
    backend = _FakeBackend([RateLimitedError(), "too late"])
    client = RetryingLLMClient(backend, backoff_base_seconds=5.0)

    async def scenario():  # type: ignore[no-untyped-def]
        token = CancellationToken()
        call = asyncio.create_task(client.complete("sys", "user", token=token))
        await asyncio.sleep(0.01)
        token.cancel("persona switched")
        return await asyncio.wait_for(call, timeout=1.0)

    assert asyncio.run(scenario()) is CANCELLED
    assert len(backend.calls) == 1


def test_placeholder_reply_becomes_none() -> None:
    backend = _FakeBackend(["<think>hmm</think>[no message]"])

    assert asyncio.run(_client(backend).complete("sys", "user")) is None


def test_unparseable_json_is_retried_once_with_raw_instruction() -> None:
    backend = _FakeBackend(["I cannot answer that", '{"ok": true}'])

    result = asyncio.run(_client(backend).complete_json("sys", "user"))

    assert result == {"ok": True}
    assert len(backend.calls) == 2
    assert len(backend.calls[1]) == len(backend.calls[0]) + 1


def test_json_that_stays_broken_returns_none() -> None:
    backend = _FakeBackend(["nope", "still nope"])

    assert asyncio.run(_client(backend).complete_json("sys", "user")) is None


def test_parse_json_repairs_leading_zero_and_trailing_comma() -> None:
    parsed = parse_json_response('{"level_ideal": 07, "level_current": 0.5,}')

    assert parsed == {"level_ideal": 0.7, "level_current": 0.5}


def test_parse_json_handles_fences_comments_and_truncation() -> None:
    fenced = 'Sure!\n```json\n{"name": "Rust", // language\n "tags": ["a", "b"],}\n```'
    assert parse_json_response(fenced) == {"name": "Rust", "tags": ["a", "b"]}

    assert parse_json_response('{"items": [{"name": "chess"}, {"name": "go"') == {
        "items": [{"name": "chess"}, {"name": "go"}]
    }


def test_parse_json_keeps_double_slashes_inside_strings() -> None:
    assert parse_json_response('{"url": "https://example.org/x"}') == {"url": "https://example.org/x"}


def test_clean_response_content_strips_reasoning_blocks() -> None:
    assert clean_response_content("<think>plan</think>\n  answer ") == "answer"


def test_map_messages_normalizes_roles_and_drops_empty() -> None:
    mapped = map_messages([
        {"role": "SYSTEM", "content": " rules "},
        {"role": "tool", "content": "x"},
        {"role": "user", "content": "   "},
    ])

    assert mapped == [{"role": "system", "content": "rules"}, {"role": "user", "content": "x"}]


def test_build_backend_rejects_unknown_name() -> None:
    with pytest.raises(ValueError):
        build_backend("carrier-pigeon", base_url="http://x", model="m", api_key="", timeout_seconds=30)


def test_backends_post_to_their_own_chat_endpoint() -> None:
    ollama = build_backend("ollama", base_url="http://127.0.0.1:11434/", model="llama3")
    openai = build_backend("openai", base_url="http://localhost:1234/v1", model="local", api_key="sk-test")

    assert ollama._endpoint() == "http://127.0.0.1:11434/api/chat"
    assert openai._endpoint() == "http://localhost:1234/v1/chat/completions"
