from __future__ import annotations

import asyncio
from typing import Final


class _Cancelled:
    """Sentinel returned by gather phases that observed a cancelled token."""

    _instance: "_Cancelled | None" = None

    def __new__(cls) -> "_Cancelled":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CANCELLED"

    def __bool__(self) -> bool:
        return False


CANCELLED: Final = _Cancelled()


def is_cancelled(value: object) -> bool:
    return value is CANCELLED


class CancellationToken:
    """Cooperative cancel flag owned by one processing cycle.

    Code holding the token checks ``cancelled`` at its checkpoints (before and
    after network calls) and uses :meth:`sleep` for waits that must stop early.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``. Returns False when the token was cancelled first."""
        if self.cancelled:
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False
