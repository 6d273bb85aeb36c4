from .blobs import BlobsMixin
from .schema import BlobSchemaMixin

__all__ = ["BlobSchemaMixin", "BlobsMixin"]
