from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger("critique_engine")


class BlobStore(Protocol):
    async def persist(self, key: str, blob: str) -> None: ...

    async def load(self, key: str) -> Optional[str]: ...

    async def remove(self, key: str) -> None: ...


class StatePersister:
    """Write-behind persistence of the reflection state blob.

    Payloads are serialized at schedule time and written by a single writer task,
    so the last scheduled snapshot is always the one left on disk.
    """

    def __init__(self, blob_store: Optional[BlobStore], key: str) -> None:
        self.blob_store = blob_store
        self.key = key
        self._pending: Optional[str] = None
        self._writer: Optional[asyncio.Task[None]] = None
        self.write_count = 0

    def schedule(self, payload: dict[str, Any]) -> None:
        if self.blob_store is None:
            return
        try:
            blob = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            logger.exception("[memory.persist] state is not serializable key=%s", self.key)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[memory.persist] write skipped: no running event loop key=%s", self.key)
            return
        self._pending = blob
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._drain_writes())

    async def _drain_writes(self) -> None:
        assert self.blob_store is not None
        while self._pending is not None:
            blob = self._pending
            self._pending = None
            try:
                await self.blob_store.persist(self.key, blob)
                self.write_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[memory.persist] write failed key=%s bytes=%s", self.key, len(blob))

    async def flush(self) -> None:
        writer = self._writer
        if writer is not None and not writer.done():
            await writer

    async def load(self) -> Optional[dict[str, Any]]:
        if self.blob_store is None:
            return None
        try:
            raw = await self.blob_store.load(self.key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[memory.persist] load failed key=%s", self.key)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            logger.warning("[memory.persist] stored state is not valid JSON key=%s (using defaults)", self.key)
            return None
        if not isinstance(payload, dict):
            logger.warning("[memory.persist] stored state root must be an object key=%s (using defaults)", self.key)
            return None
        return payload
