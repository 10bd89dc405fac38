from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _clean_secret(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned[7:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://127.0.0.1:11434",
}


@dataclass(slots=True)
class Settings:
    llm_backend: str
    llm_base_url: str
    llm_api_key: str
    llm_model: str
    llm_timeout_seconds: int
    llm_temperature: float
    llm_max_output_tokens: int
    llm_max_retries: int
    llm_backoff_base_seconds: float

    sqlite_path: Path
    primary_persona: str

    queue_poll_interval_ms: int
    queue_idle_interval_ms: int
    queue_shutdown_timeout_seconds: float

    validation_cap: int
    frequency_ceiling: int

    decay_k: float
    decay_min_hours: float
    decay_min_change: float
    desire_gap_threshold: float
    sentiment_floor: float
    heartbeat_interval_seconds: float

    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        backend = _env_str("MEMORY_LLM_BACKEND", "openai").lower()
        return cls(
            llm_backend=backend,
            llm_base_url=_env_str("MEMORY_LLM_BASE_URL", _DEFAULT_BASE_URLS.get(backend, "")),
            llm_api_key=_clean_secret(_env_lookup("MEMORY_LLM_API_KEY", ("OPENAI_API_KEY",)) or ""),
            llm_model=_env_str("MEMORY_LLM_MODEL", "gpt-4o-mini"),
            llm_timeout_seconds=_env_int("MEMORY_LLM_TIMEOUT_SECONDS", 60),
            llm_temperature=_env_float("MEMORY_LLM_TEMPERATURE", 0.3),
            llm_max_output_tokens=_env_int("MEMORY_LLM_MAX_OUTPUT_TOKENS", 2048),
            llm_max_retries=_env_int("MEMORY_LLM_MAX_RETRIES", 3),
            llm_backoff_base_seconds=_env_float("MEMORY_LLM_BACKOFF_BASE_SECONDS", 1.0),
            sqlite_path=Path(_env_str("SQLITE_PATH", "data/persona_memory.db")),
            primary_persona=_env_str("MEMORY_PRIMARY_PERSONA", "ei"),
            queue_poll_interval_ms=_env_int("MEMORY_QUEUE_POLL_INTERVAL_MS", 100),
            queue_idle_interval_ms=_env_int("MEMORY_QUEUE_IDLE_INTERVAL_MS", 1000),
            queue_shutdown_timeout_seconds=_env_float("MEMORY_QUEUE_SHUTDOWN_TIMEOUT_SECONDS", 5.0),
            validation_cap=_env_int("MEMORY_VALIDATION_CAP", 5),
            frequency_ceiling=_env_int("MEMORY_FREQUENCY_CEILING", 10),
            decay_k=_env_float("MEMORY_DECAY_K", 0.1),
            decay_min_hours=_env_float("MEMORY_DECAY_MIN_HOURS", 0.1),
            decay_min_change=_env_float("MEMORY_DECAY_MIN_CHANGE", 0.001),
            desire_gap_threshold=_env_float("MEMORY_DESIRE_GAP_THRESHOLD", 0.3),
            sentiment_floor=_env_float("MEMORY_SENTIMENT_FLOOR", -0.5),
            heartbeat_interval_seconds=_env_float("MEMORY_HEARTBEAT_INTERVAL_SECONDS", 300.0),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.llm_backend not in _DEFAULT_BASE_URLS:
            raise ValueError("MEMORY_LLM_BACKEND must be one of: openai, ollama")
        if not self.llm_base_url:
            raise ValueError("MEMORY_LLM_BASE_URL cannot be empty")
        if not self.llm_model:
            raise ValueError("MEMORY_LLM_MODEL cannot be empty")
        if self.llm_backend == "openai" and not self.llm_api_key:
            raise ValueError("MEMORY_LLM_API_KEY is required for the openai backend")
        if self.llm_timeout_seconds < 5:
            raise ValueError("MEMORY_LLM_TIMEOUT_SECONDS must be >= 5")
        if not 0.0 <= self.llm_temperature <= 2.0:
            raise ValueError("MEMORY_LLM_TEMPERATURE must be within [0, 2]")
        if self.llm_max_output_tokens < 0:
            raise ValueError("MEMORY_LLM_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.llm_max_retries < 1:
            raise ValueError("MEMORY_LLM_MAX_RETRIES must be >= 1")
        if self.llm_backoff_base_seconds < 0:
            raise ValueError("MEMORY_LLM_BACKOFF_BASE_SECONDS must be >= 0")

        if not self.primary_persona.strip():
            raise ValueError("MEMORY_PRIMARY_PERSONA cannot be empty")

        if self.queue_poll_interval_ms < 10:
            raise ValueError("MEMORY_QUEUE_POLL_INTERVAL_MS must be >= 10")
        if self.queue_idle_interval_ms < self.queue_poll_interval_ms:
            raise ValueError("MEMORY_QUEUE_IDLE_INTERVAL_MS must be >= MEMORY_QUEUE_POLL_INTERVAL_MS")
        if self.queue_shutdown_timeout_seconds <= 0:
            raise ValueError("MEMORY_QUEUE_SHUTDOWN_TIMEOUT_SECONDS must be > 0")

        if self.validation_cap < 0:
            raise ValueError("MEMORY_VALIDATION_CAP must be >= 0")
        if self.frequency_ceiling < 1:
            raise ValueError("MEMORY_FREQUENCY_CEILING must be >= 1")

        if self.decay_k < 0:
            raise ValueError("MEMORY_DECAY_K must be >= 0")
        if self.decay_min_hours < 0:
            raise ValueError("MEMORY_DECAY_MIN_HOURS must be >= 0")
        if self.decay_min_change < 0:
            raise ValueError("MEMORY_DECAY_MIN_CHANGE must be >= 0")
        if not 0.0 < self.desire_gap_threshold <= 1.0:
            raise ValueError("MEMORY_DESIRE_GAP_THRESHOLD must be within (0, 1]")
        if not -1.0 <= self.sentiment_floor <= 1.0:
            raise ValueError("MEMORY_SENTIMENT_FLOOR must be within [-1, 1]")
        if self.heartbeat_interval_seconds < 1:
            raise ValueError("MEMORY_HEARTBEAT_INTERVAL_SECONDS must be >= 1")
