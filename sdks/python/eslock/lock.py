"""Lease-based distributed locks.

A lock is a best-effort efficiency primitive: it keeps processes from doing
the same work twice and lets one take over when another dies. Clock skew or
races inside the store can still leave two holders, so data guarded by a
lock still needs the store's own optimistic concurrency control.
"""

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Optional, Union

from .exceptions import (
    AlreadyReleasedError,
    ConflictError,
    InvalidWindowError,
    LockHeldError,
    NotAcquiredError,
    ValidationError,
)
from .keepalive import AsyncKeepAlive, KeepAlive
from .models import (
    LockDocument,
    LockPhase,
    LockSnapshot,
    LockState,
    UpsertOutcome,
    UpsertResult,
    utcnow,
)
from .protocol import LeaseScript
from .store import AsyncDocumentStore, DocumentStore

logger = logging.getLogger(__name__)

Duration = Union[timedelta, int, float]


def new_owner_id() -> str:
    """Generate a random owner identity."""
    return str(uuid.uuid4())


def _as_timedelta(value: Duration) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class _BaseLock:
    def __init__(self, lock_id: str, owner: Optional[str] = None):
        if not lock_id:
            raise ValidationError("Lock id must not be empty")
        if owner is not None and not owner:
            raise ValidationError("Owner must not be empty")
        self._state = LockState(lock_id, owner if owner is not None else new_owner_id())

    @property
    def id(self) -> str:
        return self._state.lock_id

    @property
    def owner(self) -> str:
        return self._state.snapshot().owner

    @property
    def acquired(self) -> Optional[datetime]:
        """When the store last handed ownership to this owner."""
        return self._state.snapshot().acquired

    @property
    def expires(self) -> Optional[datetime]:
        return self._state.snapshot().expires

    @property
    def last_ttl(self) -> Optional[timedelta]:
        return self._state.snapshot().last_ttl

    @property
    def keep_alive_active(self) -> bool:
        return self._state.snapshot().keep_alive_active

    def with_owner(self, owner: str):
        """Set the owner manually. Call before the first acquire."""
        if not owner:
            raise ValidationError("Owner must not be empty")
        self._state.set_owner(owner)
        return self

    def snapshot(self) -> LockSnapshot:
        return self._state.snapshot()

    def is_acquired(self) -> bool:
        """True if acquired and not expired, as far as this instance knows."""
        return self._state.is_acquired()

    def is_released(self) -> bool:
        """True if released by this instance or expired."""
        return self._state.is_released()

    def phase(self) -> LockPhase:
        return self._state.phase()

    def _lease_script(self, ttl: timedelta) -> LeaseScript:
        now = utcnow()
        return LeaseScript(owner=self.owner, now=now, expires=now + ttl)

    def _commit(self, script: LeaseScript, outcome: UpsertOutcome, ttl: timedelta) -> None:
        if outcome.result is UpsertResult.NOOP:
            holder = outcome.document.owner if outcome.document else None
            logger.debug("Lock %r is held by %s", self.id, holder)
            raise LockHeldError(f"Lock {self.id!r} is held by another owner", lock_id=self.id, holder=holder)
        previous = self._state.snapshot()
        if outcome.document is not None:
            acquired = outcome.document.acquired
        elif (outcome.result is UpsertResult.UPDATED and previous.is_acquired and previous.acquired
              and previous.expires is not None and previous.expires > script.now):
            # still our unexpired lease, so this was a pure renewal
            acquired = previous.acquired
        else:
            acquired = script.now
        self._state.commit_acquire(acquired, script.expires, ttl)
        logger.debug("Lock %r %s by %s until %s", self.id, outcome.result.value, script.owner, script.expires)

    def _conflict(self, error: ConflictError) -> LockHeldError:
        return LockHeldError(f"Lock {self.id!r} was modified concurrently: {error}", lock_id=self.id)

    def _check_keep_alive(self, before_expiry: timedelta) -> None:
        state = self._state.snapshot()
        if not state.is_acquired:
            raise NotAcquiredError(f"Acquire lock {self.id!r} before keep-alive")
        if state.last_ttl is None or before_expiry >= state.last_ttl:
            raise InvalidWindowError(
                f"before_expiry ({before_expiry}) should be smaller than the lock's TTL ({state.last_ttl})"
            )


class Lock(_BaseLock):
    """Distributed lock stored as one document in a shared index.

    Example:
        lock = Lock(store, "nightly-report", owner=worker_id)
        lock.acquire(timedelta(seconds=30))
        lock.keep_alive(timedelta(seconds=5))
        ...
        lock.release()
    """

    def __init__(self, store: DocumentStore, lock_id: str, owner: Optional[str] = None):
        """Initialize the lock.

        Args:
            store: Document store holding the lock index
            lock_id: Name of the lock within the index
            owner: Identity of this holder; a random UUID if omitted
        """
        super().__init__(lock_id, owner)
        self.store = store
        self._submit = threading.Lock()
        self._keep_alive: Optional[KeepAlive] = None

    def acquire(self, ttl: Duration) -> None:
        """Acquire, renew or take over the lock for `ttl`.

        Raises:
            LockHeldError: another owner holds an unexpired lease
            StoreError: the store request failed
        """
        ttl = _as_timedelta(ttl)
        with self._submit:
            self._acquire(ttl)

    def _acquire(self, ttl: timedelta) -> None:
        script = self._lease_script(ttl)
        try:
            outcome = self.store.conditional_upsert(self.id, script)
        except ConflictError as e:
            raise self._conflict(e) from e
        self._commit(script, outcome, ttl)

    def _renew(self) -> bool:
        with self._submit:
            state = self._state.snapshot()
            if state.is_released:
                return False
            self._acquire(state.last_ttl)
            return True

    def keep_alive(self, before_expiry: Duration) -> None:
        """Renew the lock automatically `before_expiry` ahead of each expiry.

        Renewal continues until release(), stop_keep_alive() or process exit.
        Renewal errors are logged, not raised. Don't use with very short TTLs.
        """
        before_expiry = _as_timedelta(before_expiry)
        self._check_keep_alive(before_expiry)
        if not self._state.start_keep_alive():
            return
        self._keep_alive = KeepAlive(self._state, self._renew, before_expiry)
        self._keep_alive.start()

    def stop_keep_alive(self, wait: bool = False) -> None:
        """Cancel the renewal chain. A renewal already in flight still completes."""
        chain = self._keep_alive
        if chain is None:
            return
        chain.cancel()
        self._state.end_keep_alive()
        if wait and not chain.on_chain_thread():
            chain.join()

    def release(self) -> None:
        """Remove the lock if this owner still holds it. Releasing twice is fine."""
        self._release(strict=False)

    def must_release(self) -> None:
        """Remove the lock, raising AlreadyReleasedError if nothing was held."""
        self._release(strict=True)

    def _release(self, strict: bool) -> None:
        with self._submit:
            state = self._state.snapshot()
            if state.is_released:
                if strict:
                    raise AlreadyReleasedError(f"Lock {self.id!r} is already released")
                return
            deleted = self.store.conditional_delete(self.id, state.owner)
            self._state.mark_released()
        self.stop_keep_alive()
        logger.debug("Lock %r released by %s (%d deleted)", self.id, state.owner, deleted)
        if strict and deleted == 0:
            raise AlreadyReleasedError(f"Lock {self.id!r} was no longer held by {state.owner}")

    def holder(self) -> Optional[LockDocument]:
        """Read the current lease from the store."""
        return self.store.get(self.id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class AsyncLock(_BaseLock):
    """Asyncio flavour of Lock; keep-alive runs as a task on the running loop."""

    def __init__(self, store: AsyncDocumentStore, lock_id: str, owner: Optional[str] = None):
        """Initialize the lock.

        Args:
            store: Async document store holding the lock index
            lock_id: Name of the lock within the index
            owner: Identity of this holder; a random UUID if omitted
        """
        super().__init__(lock_id, owner)
        self.store = store
        self._submit = asyncio.Lock()
        self._keep_alive: Optional[AsyncKeepAlive] = None

    async def acquire(self, ttl: Duration) -> None:
        """Acquire, renew or take over the lock for `ttl`."""
        ttl = _as_timedelta(ttl)
        async with self._submit:
            await self._acquire(ttl)

    async def _acquire(self, ttl: timedelta) -> None:
        script = self._lease_script(ttl)
        try:
            outcome = await self.store.conditional_upsert(self.id, script)
        except ConflictError as e:
            raise self._conflict(e) from e
        self._commit(script, outcome, ttl)

    async def _renew(self) -> bool:
        async with self._submit:
            state = self._state.snapshot()
            if state.is_released:
                return False
            await self._acquire(state.last_ttl)
            return True

    def keep_alive(self, before_expiry: Duration) -> None:
        """Renew the lock automatically `before_expiry` ahead of each expiry.

        Must be called from a running event loop. Returns immediately.
        """
        before_expiry = _as_timedelta(before_expiry)
        self._check_keep_alive(before_expiry)
        if not self._state.start_keep_alive():
            return
        self._keep_alive = AsyncKeepAlive(self._state, self._renew, before_expiry)
        self._keep_alive.start()

    def stop_keep_alive(self) -> None:
        """Cancel the renewal chain. A renewal already in flight still completes."""
        if self._keep_alive is not None:
            self._keep_alive.cancel()
            self._state.end_keep_alive()

    async def release(self) -> None:
        """Remove the lock if this owner still holds it. Releasing twice is fine."""
        await self._release(strict=False)

    async def must_release(self) -> None:
        """Remove the lock, raising AlreadyReleasedError if nothing was held."""
        await self._release(strict=True)

    async def _release(self, strict: bool) -> None:
        async with self._submit:
            state = self._state.snapshot()
            if state.is_released:
                if strict:
                    raise AlreadyReleasedError(f"Lock {self.id!r} is already released")
                return
            deleted = await self.store.conditional_delete(self.id, state.owner)
            self._state.mark_released()
        self.stop_keep_alive()
        logger.debug("Lock %r released by %s (%d deleted)", self.id, state.owner, deleted)
        if strict and deleted == 0:
            raise AlreadyReleasedError(f"Lock {self.id!r} was no longer held by {state.owner}")

    async def holder(self) -> Optional[LockDocument]:
        """Read the current lease from the store."""
        return await self.store.get(self.id)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
