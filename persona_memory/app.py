from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from .config import Settings
from .llm import RetryingLLMClient, build_backend
from .models import OwnerRef
from .pipeline import MemoryPipeline
from .store import MemoryStore

logger = logging.getLogger("persona_memory")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_client(settings: Settings) -> RetryingLLMClient:
    backend = build_backend(
        settings.llm_backend,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.llm_timeout_seconds,
    )
    return RetryingLLMClient(
        backend,
        max_attempts=settings.llm_max_retries,
        backoff_base_seconds=settings.llm_backoff_base_seconds,
        temperature=settings.llm_temperature,
        max_output_tokens=settings.llm_max_output_tokens,
    )


def build_pipeline(settings: Settings, *, durable: bool = False) -> MemoryPipeline:
    return MemoryPipeline(
        MemoryStore(settings.sqlite_path),
        build_client(settings),
        primary_persona=settings.primary_persona,
        durable=durable,
        validation_cap=settings.validation_cap,
        frequency_ceiling=settings.frequency_ceiling,
        decay_k=settings.decay_k,
        decay_min_hours=settings.decay_min_hours,
        decay_min_change=settings.decay_min_change,
        desire_gap_threshold=settings.desire_gap_threshold,
        sentiment_floor=settings.sentiment_floor,
        poll_interval=settings.queue_poll_interval_ms / 1000.0,
        idle_interval=settings.queue_idle_interval_ms / 1000.0,
        shutdown_timeout=settings.queue_shutdown_timeout_seconds,
    )


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(ValueError, OSError):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and _is_process_alive(stale_pid):
            raise RuntimeError(f"Memory worker is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(OSError):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(OSError):
        if lock_path.exists():
            lock_path.unlink()


async def run_heartbeat(pipeline: MemoryPipeline) -> int:
    """Decay every owner once. Returns the number of desire gaps found."""
    owners = [OwnerRef.human()]
    owners.extend(OwnerRef.persona(p.name) for p in await pipeline.store.list_personas() if p.name)
    gaps = 0
    for owner in owners:
        found = await pipeline.heartbeat(owner)
        if found:
            logger.info("[heartbeat] %s: desire gap on %s", owner.key, ", ".join(t.name for t in found[:5]))
        gaps += len(found)
    return gaps


async def _run_worker(settings: Settings) -> None:
    pipeline = build_pipeline(settings, durable=True)
    await pipeline.start()
    logger.info("Memory worker started (backend=%s, model=%s)", settings.llm_backend, settings.llm_model)
    try:
        while True:
            await run_heartbeat(pipeline)
            await asyncio.sleep(settings.heartbeat_interval_seconds)
    finally:
        await pipeline.close()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    lock_path = settings.sqlite_path.parent / "persona_memory.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_worker(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
