"""Storage backends: story documents, image blobs and character profiles."""

from storyloom.storage.blobs import (
    BlobStorage,
    InMemoryBlobStorage,
    LocalBlobStorage,
    asset_path,
    content_type_for,
)
from storyloom.storage.documents import (
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStoreError,
    InMemoryDocumentStore,
    SqliteDocumentStore,
    Transaction,
    TransactionalStore,
    TransactionConflictError,
)
from storyloom.storage.profiles import InMemoryProfileDirectory, ProfileDirectory

__all__ = [
    "BlobStorage",
    "DocumentExistsError",
    "DocumentNotFoundError",
    "DocumentStoreError",
    "InMemoryBlobStorage",
    "InMemoryDocumentStore",
    "InMemoryProfileDirectory",
    "LocalBlobStorage",
    "ProfileDirectory",
    "SqliteDocumentStore",
    "Transaction",
    "TransactionConflictError",
    "TransactionalStore",
    "asset_path",
    "content_type_for",
]
