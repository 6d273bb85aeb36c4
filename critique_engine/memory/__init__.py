from .blob_store import InMemoryBlobStore, SqliteBlobStore
from .documents import DocumentName
from .persistence import StatePersister
from .store import MemoryStore

__all__ = ["DocumentName", "InMemoryBlobStore", "MemoryStore", "SqliteBlobStore", "StatePersister"]
