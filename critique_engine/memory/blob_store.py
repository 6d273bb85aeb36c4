from __future__ import annotations

from typing import Dict, Optional

from .storage.blobs import BlobsMixin
from .storage.schema import BlobSchemaMixin


class SqliteBlobStore(BlobSchemaMixin, BlobsMixin):
    """Durable key/value blob store for the reflection state."""

    backend_name = "sqlite"


class InMemoryBlobStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self.blobs: Dict[str, str] = {}

    async def persist(self, key: str, blob: str) -> None:
        self.blobs[key] = blob

    async def load(self, key: str) -> Optional[str]:
        return self.blobs.get(key)

    async def remove(self, key: str) -> None:
        self.blobs.pop(key, None)
