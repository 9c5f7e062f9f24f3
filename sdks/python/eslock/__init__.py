"""eslock - lease-based distributed locks on Elasticsearch."""

from .client import AsyncElasticsearchStore, ElasticsearchStore
from .config import StoreConfig
from .exceptions import (
    EsLockError,
    StoreError,
    NetworkError,
    ConflictError,
    LockHeldError,
    AlreadyReleasedError,
    NotAcquiredError,
    InvalidWindowError,
    ValidationError,
)
from .lock import AsyncLock, Lock, new_owner_id
from .memory import AsyncInMemoryStore, InMemoryStore
from .models import (
    LockDocument,
    LockPhase,
    LockSnapshot,
    UpsertResult,
)
from .store import AsyncDocumentStore, DocumentStore

__version__ = "1.0.0"
__all__ = [
    "Lock",
    "AsyncLock",
    "new_owner_id",
    "StoreConfig",
    "DocumentStore",
    "AsyncDocumentStore",
    "ElasticsearchStore",
    "AsyncElasticsearchStore",
    "InMemoryStore",
    "AsyncInMemoryStore",
    "EsLockError",
    "StoreError",
    "NetworkError",
    "ConflictError",
    "LockHeldError",
    "AlreadyReleasedError",
    "NotAcquiredError",
    "InvalidWindowError",
    "ValidationError",
    "LockDocument",
    "LockPhase",
    "LockSnapshot",
    "UpsertResult",
]
