from __future__ import annotations

from typing import Iterable

import aiosqlite

from ..common import utc_now_iso
from ..models import Message, OwnerRef
from .utils import _sqlite_memory_connection


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=int(row["message_id"]),
        persona=str(row["persona"]),
        role=str(row["role"]),
        content=str(row["content"]),
        timestamp=str(row["created_at"]),
        extracted=bool(row["extracted"]),
    )


class MemoryMessagesMixin:
    async def add_message(self, persona: str, role: str, content: str, timestamp: str | None = None) -> Message:
        if role not in {"human", "persona"}:
            raise ValueError(f"message role must be 'human' or 'persona', got {role!r}")
        created_at = timestamp or utc_now_iso()
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (persona, role, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (persona, role, content, created_at),
            )
            await db.commit()
            message_id = int(cursor.lastrowid)
        return Message(id=message_id, persona=persona, role=role, content=content, timestamp=created_at)

    async def recent_messages(
        self,
        persona: str,
        limit: int = 20,
        *,
        owner: OwnerRef | None = None,
        pending_only: bool = False,
    ) -> list[Message]:
        """Newest ``limit`` messages for a persona, returned oldest first.

        Consumption is tracked per owner: ``extracted`` and ``pending_only``
        refer to ``owner``, so the human and each persona consume the same
        messages independently.
        """
        if pending_only and owner is None:
            raise ValueError("pending_only requires an owner")
        owner_key = owner.key if owner is not None else ""
        consumed = """
            EXISTS (
                SELECT 1 FROM message_extractions e
                WHERE e.message_id = m.message_id AND e.owner_key = ?
            )
        """
        query = f"SELECT m.*, {consumed} AS extracted FROM messages m WHERE m.persona = ?"
        params: list[object] = [owner_key, persona]
        if pending_only:
            query += f" AND NOT {consumed}"
            params.append(owner_key)
        query += " ORDER BY m.message_id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    async def mark_messages_extracted(self, owner: OwnerRef, message_ids: Iterable[int]) -> int:
        ids = sorted({int(i) for i in message_ids})
        if not ids:
            return 0
        extracted_at = utc_now_iso()
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.executemany(
                """
                INSERT OR IGNORE INTO message_extractions (message_id, owner_key, extracted_at)
                VALUES (?, ?, ?)
                """,
                [(message_id, owner.key, extracted_at) for message_id in ids],
            )
            await db.commit()
            return int(cursor.rowcount or 0)
