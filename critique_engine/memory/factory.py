from __future__ import annotations

from typing import Any

from ..config import Settings
from .blob_store import InMemoryBlobStore, SqliteBlobStore


def build_blob_store(settings: Settings) -> Any:
    backend = settings.state_backend
    if backend == "sqlite":
        return SqliteBlobStore(settings.sqlite_path)
    if backend == "memory":
        return InMemoryBlobStore()
    raise ValueError("REFLECTION_STATE_BACKEND must be 'sqlite' or 'memory'")
