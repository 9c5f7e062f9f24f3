"""In-memory document stores for tests and local development."""

import threading
from typing import Dict, Optional

from .models import LockDocument, UpsertOutcome, UpsertResult
from .protocol import LeaseScript
from .store import AsyncDocumentStore, DocumentStore


class InMemoryStore(DocumentStore):
    """Single-process store applying the lease rules under one mutex.

    Several Lock instances sharing one InMemoryStore behave like separate
    processes sharing an index.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, LockDocument] = {}
        self._mutex = threading.Lock()

    def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome:
        with self._mutex:
            result, document = script.decide(self._documents.get(lock_id))
            if result is not UpsertResult.NOOP:
                self._documents[lock_id] = document
            return UpsertOutcome(result=result, document=document)

    def conditional_delete(self, lock_id: str, owner: str) -> int:
        with self._mutex:
            current = self._documents.get(lock_id)
            if current is None or current.owner != owner:
                return 0
            del self._documents[lock_id]
            return 1

    def get(self, lock_id: str) -> Optional[LockDocument]:
        with self._mutex:
            return self._documents.get(lock_id)


class AsyncInMemoryStore(AsyncDocumentStore):
    """Async facade over an InMemoryStore."""

    def __init__(self, store: Optional[InMemoryStore] = None) -> None:
        self.store = store or InMemoryStore()

    async def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome:
        return self.store.conditional_upsert(lock_id, script)

    async def conditional_delete(self, lock_id: str, owner: str) -> int:
        return self.store.conditional_delete(lock_id, owner)

    async def get(self, lock_id: str) -> Optional[LockDocument]:
        return self.store.get(lock_id)
