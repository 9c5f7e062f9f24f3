"""Document store interfaces consumed by locks."""

from abc import ABC, abstractmethod
from typing import Optional

from .models import LockDocument, UpsertOutcome
from .protocol import LeaseScript


class DocumentStore(ABC):
    """Blocking store offering atomic per-document conditional writes."""

    @abstractmethod
    def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome:
        """Atomically apply `script` to the document keyed by `lock_id`.

        Raises:
            ConflictError: the store detected a concurrent write.
            StoreError: any other failure.
        """

    @abstractmethod
    def conditional_delete(self, lock_id: str, owner: str) -> int:
        """Delete the document only while `owner` holds it. Returns the deleted count."""

    @abstractmethod
    def get(self, lock_id: str) -> Optional[LockDocument]: ...

    def ensure_index(self) -> None:
        """Prepare the backing index. Stores without one do nothing."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncDocumentStore(ABC):
    """Async counterpart of DocumentStore."""

    @abstractmethod
    async def conditional_upsert(self, lock_id: str, script: LeaseScript) -> UpsertOutcome: ...

    @abstractmethod
    async def conditional_delete(self, lock_id: str, owner: str) -> int: ...

    @abstractmethod
    async def get(self, lock_id: str) -> Optional[LockDocument]: ...

    async def ensure_index(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
