from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from roleplay_core.db.models import KeyValueBlob
from roleplay_core.utils.time_utils import utc_now


class BlobRepo:
    """Repository for key/JSON-blob rows."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, key: str) -> Optional[str]:
        """Return the raw JSON stored under ``key``."""

        result = await self._db.execute(select(KeyValueBlob.value_json).where(KeyValueBlob.key == key))
        return result.scalar_one_or_none()

    async def upsert(self, key: str, value_json: str) -> None:
        """Insert or overwrite the JSON stored under ``key``."""

        row = await self._db.get(KeyValueBlob, key)
        if row is None:
            self._db.add(KeyValueBlob(key=key, value_json=value_json, updated_at=utc_now()))
        else:
            row.value_json = value_json
            row.updated_at = utc_now()
        await self._db.flush()

    async def delete(self, key: str) -> bool:
        result = await self._db.execute(delete(KeyValueBlob).where(KeyValueBlob.key == key))
        return bool(result.rowcount)

    async def list_keys(self, prefix: str = "") -> list[str]:
        stmt = select(KeyValueBlob.key).order_by(KeyValueBlob.key)
        if prefix:
            stmt = stmt.where(KeyValueBlob.key.startswith(prefix))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())
