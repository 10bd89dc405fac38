from __future__ import annotations

from typing import Iterable

import aiosqlite

from ..models import DataType, ExtractionHistory, OwnerRef
from .utils import _sqlite_memory_connection


class MemoryExtractionStateMixin:
    async def load_extraction_state(self, owner: OwnerRef) -> dict[DataType, ExtractionHistory]:
        state = {data_type: ExtractionHistory() for data_type in owner.allowed_types()}
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT data_type, last_extraction, messages_since_last_extract, total_extractions
                FROM extraction_state
                WHERE owner_key = ?
                """,
                (owner.key,),
            ) as cursor:
                rows = await cursor.fetchall()
        for row in rows:
            try:
                data_type = DataType(row["data_type"])
            except ValueError:
                continue
            if data_type not in state:
                continue
            state[data_type] = ExtractionHistory(
                last_extraction=row["last_extraction"],
                messages_since_last_extract=int(row["messages_since_last_extract"]),
                total_extractions=int(row["total_extractions"]),
            )
        return state

    async def increment_message_counts(self, owner: OwnerRef, data_types: Iterable[DataType]) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            for data_type in data_types:
                await db.execute(
                    """
                    INSERT INTO extraction_state (owner_key, data_type, messages_since_last_extract)
                    VALUES (?, ?, 1)
                    ON CONFLICT(owner_key, data_type) DO UPDATE SET
                        messages_since_last_extract = messages_since_last_extract + 1
                    """,
                    (owner.key, data_type.value),
                )
            await db.commit()

    async def record_extraction(self, owner: OwnerRef, data_type: DataType, when: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO extraction_state (
                    owner_key, data_type, last_extraction, messages_since_last_extract, total_extractions
                )
                VALUES (?, ?, ?, 0, 1)
                ON CONFLICT(owner_key, data_type) DO UPDATE SET
                    last_extraction = excluded.last_extraction,
                    messages_since_last_extract = 0,
                    total_extractions = total_extractions + 1
                """,
                (owner.key, data_type.value, when),
            )
            await db.commit()
