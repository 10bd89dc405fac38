from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

    _TABLES = ("dead_letters", "queue_items", "extraction_state", "message_extractions", "messages", "owners")

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                for table in self._TABLES:
                    await db.execute(f"DROP TABLE IF EXISTS {table}")

            await self._create_schema(db)
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS owners (
                owner_key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                document TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                persona TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_persona
            ON messages(persona, message_id);

            CREATE TABLE IF NOT EXISTS message_extractions (
                message_id INTEGER NOT NULL,
                owner_key TEXT NOT NULL,
                extracted_at TEXT NOT NULL,
                PRIMARY KEY (message_id, owner_key)
            );

            CREATE TABLE IF NOT EXISTS extraction_state (
                owner_key TEXT NOT NULL,
                data_type TEXT NOT NULL,
                last_extraction TEXT,
                messages_since_last_extract INTEGER NOT NULL DEFAULT 0,
                total_extractions INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (owner_key, data_type)
            );

            CREATE TABLE IF NOT EXISTS queue_items (
                item_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                priority TEXT NOT NULL,
                priority_rank INTEGER NOT NULL,
                owner_key TEXT NOT NULL DEFAULT '',
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_attempt TEXT,
                last_error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_queue_items_order
            ON queue_items(kind, priority_rank, created_at);

            CREATE TABLE IF NOT EXISTS dead_letters (
                dead_letter_id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                last_error TEXT NOT NULL DEFAULT '',
                failed_at TEXT NOT NULL
            );
            """
        )
