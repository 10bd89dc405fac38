from __future__ import annotations

from typing import Any, Iterable

import aiosqlite

from ..common import utc_now_iso
from ..queue.tasks import QueueTask
from .utils import _dump_json, _load_json_object, _sqlite_memory_connection


def _row_to_task_dict(row: aiosqlite.Row) -> dict[str, Any]:
    return {
        "id": row["item_id"],
        "kind": row["kind"],
        "priority": row["priority"],
        "payload": _load_json_object(row["payload"]),
        "created_at": row["created_at"],
        "attempts": int(row["attempts"]),
        "last_attempt": row["last_attempt"],
        "last_error": row["last_error"],
    }


class MemoryQueueMixin:
    """Durable queue rows. Rows are returned as plain dicts so callers decide how to handle unknown kinds."""

    async def insert_queue_item(self, task: QueueTask) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO queue_items (
                    item_id, kind, priority, priority_rank, owner_key, payload,
                    created_at, attempts, last_attempt, last_error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.kind.value,
                    task.priority.value,
                    task.priority.rank,
                    task.owner.key,
                    _dump_json(task.payload.to_dict()),
                    task.created_at,
                    task.attempts,
                    task.last_attempt,
                    task.last_error,
                ),
            )
            await db.commit()

    async def next_queue_item(self, *, exclude_kinds: Iterable[str] = ()) -> dict[str, Any] | None:
        excluded = sorted(set(exclude_kinds))
        query = "SELECT * FROM queue_items"
        if excluded:
            query += f" WHERE kind NOT IN ({','.join('?' for _ in excluded)})"
        query += " ORDER BY priority_rank ASC, created_at ASC, rowid ASC LIMIT 1"
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, excluded) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_task_dict(row)

    async def list_queue_items(self, kind: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM queue_items"
        params: tuple[Any, ...] = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY priority_rank ASC, created_at ASC, rowid ASC"
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_task_dict(row) for row in rows]

    async def count_queue_items(self, *, exclude_kinds: Iterable[str] = ()) -> int:
        excluded = sorted(set(exclude_kinds))
        query = "SELECT COUNT(*) FROM queue_items"
        if excluded:
            query += f" WHERE kind NOT IN ({','.join('?' for _ in excluded)})"
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, excluded) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete_queue_items(self, item_ids: Iterable[str]) -> int:
        ids = [str(i) for i in item_ids]
        if not ids:
            return 0
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                f"DELETE FROM queue_items WHERE item_id IN ({','.join('?' for _ in ids)})",
                ids,
            )
            await db.commit()
            return int(cursor.rowcount or 0)

    async def record_queue_failure(self, item_id: str, error: str) -> int:
        """Increment the attempt counter and return the new value (0 when the row is gone)."""
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                UPDATE queue_items
                SET attempts = attempts + 1, last_attempt = ?, last_error = ?
                WHERE item_id = ?
                """,
                (utc_now_iso(), error, item_id),
            )
            async with db.execute("SELECT attempts FROM queue_items WHERE item_id = ?", (item_id,)) as cursor:
                row = await cursor.fetchone()
            await db.commit()
        return int(row[0]) if row else 0

    async def dead_letter_queue_item(self, item_id: str, error: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM queue_items WHERE item_id = ?", (item_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return False
            await db.execute(
                """
                INSERT INTO dead_letters (item_id, kind, payload, attempts, last_error, failed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (row["item_id"], row["kind"], row["payload"], int(row["attempts"]), error, utc_now_iso()),
            )
            await db.execute("DELETE FROM queue_items WHERE item_id = ?", (item_id,))
            await db.commit()
        return True

    async def list_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM dead_letters ORDER BY dead_letter_id DESC LIMIT ?",
                (max(1, int(limit)),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]
