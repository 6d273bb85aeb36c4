from __future__ import annotations

from typing import Optional

from .utils import _sqlite_connection


class BlobsMixin:
    async def persist(self, key: str, blob: str) -> None:
        await self._ensure_initialized()
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO state_blobs (blob_key, payload, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(blob_key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, blob),
            )
            await db.commit()

    async def load(self, key: str) -> Optional[str]:
        await self._ensure_initialized()
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT payload FROM state_blobs WHERE blob_key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return str(row[0])

    async def remove(self, key: str) -> None:
        await self._ensure_initialized()
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("DELETE FROM state_blobs WHERE blob_key = ?", (key,))
            await db.commit()
