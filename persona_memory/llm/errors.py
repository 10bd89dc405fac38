from __future__ import annotations


class LLMError(RuntimeError):
    """Base class for language-model call failures."""


class RateLimitedError(LLMError):
    def __init__(self, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class LLMRequestError(LLMError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TruncatedResponseError(LLMError):
    """The model stopped at its output-token limit, so the payload is incomplete."""

    def __init__(self, finish_reason: str) -> None:
        super().__init__(f"response truncated (finish_reason={finish_reason})")
        self.finish_reason = finish_reason


class MalformedResponseError(LLMError):
    """The backend answered 200 but the envelope could not be read."""
