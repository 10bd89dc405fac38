from __future__ import annotations

import aiosqlite

from ..common import utc_now_iso
from ..models import HumanEntity, OwnerRef, PersonaEntity
from .utils import _dump_json, _load_json_object, _sqlite_memory_connection


class MemoryEntitiesMixin:
    """Whole-record load/save of owner documents."""

    async def _load_document(self, owner_key: str) -> dict | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT document FROM owners WHERE owner_key = ?",
                (owner_key,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _load_json_object(row["document"])

    async def _save_document(self, owner: OwnerRef, document: dict) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO owners (owner_key, kind, name, document, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner_key) DO UPDATE SET
                    document = excluded.document,
                    updated_at = excluded.updated_at
                """,
                (owner.key, owner.kind.value, owner.name, _dump_json(document), utc_now_iso()),
            )
            await db.commit()

    async def load_human(self) -> HumanEntity:
        document = await self._load_document(OwnerRef.human().key)
        if document is None:
            return HumanEntity()
        return HumanEntity.from_dict(document)

    async def save_human(self, entity: HumanEntity) -> None:
        await self._save_document(OwnerRef.human(), entity.to_dict())

    async def load_persona(self, name: str) -> PersonaEntity | None:
        document = await self._load_document(OwnerRef.persona(name).key)
        if document is None:
            return None
        return PersonaEntity.from_dict(document)

    async def save_persona(self, entity: PersonaEntity) -> None:
        await self._save_document(OwnerRef.persona(entity.name), entity.to_dict())

    async def load_owner(self, owner: OwnerRef) -> HumanEntity | PersonaEntity | None:
        if owner.is_human:
            return await self.load_human()
        return await self.load_persona(owner.name)

    async def save_owner(self, owner: OwnerRef, entity: HumanEntity | PersonaEntity) -> None:
        if owner.is_human:
            assert isinstance(entity, HumanEntity)
            await self.save_human(entity)
            return
        assert isinstance(entity, PersonaEntity)
        await self._save_document(owner, entity.to_dict())

    async def list_personas(self) -> list[PersonaEntity]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT document FROM owners WHERE kind = 'persona' ORDER BY name COLLATE NOCASE"
            ) as cursor:
                rows = await cursor.fetchall()
        return [PersonaEntity.from_dict(_load_json_object(row["document"])) for row in rows]
