"""AsyncLock tests against the in-memory store."""

import asyncio
import logging
from datetime import timedelta

import pytest
from eslock import (
    AlreadyReleasedError,
    AsyncInMemoryStore,
    AsyncLock,
    InvalidWindowError,
    LockHeldError,
    NotAcquiredError,
    StoreError,
)

TTL = timedelta(milliseconds=500)


@pytest.fixture
def store() -> AsyncInMemoryStore:
    return AsyncInMemoryStore()


async def test_second_owner_waits_for_expiry(store: AsyncInMemoryStore) -> None:
    a = AsyncLock(store, "L", owner="a")
    b = AsyncLock(store, "L", owner="b")
    await a.acquire(TTL)
    with pytest.raises(LockHeldError, match="held by another owner"):
        await b.acquire(TTL)

    await asyncio.sleep(TTL.total_seconds())
    await b.acquire(TTL)
    holder = await b.holder()
    assert holder.owner == "b"
    assert b.is_acquired() is True
    assert a.is_acquired() is False


async def test_release_after_takeover(store: AsyncInMemoryStore) -> None:
    a = AsyncLock(store, "L", owner="a")
    b = AsyncLock(store, "L", owner="b")
    await a.acquire(TTL)
    await asyncio.sleep(TTL.total_seconds())
    await b.acquire(TTL)

    await a.release()
    with pytest.raises(AlreadyReleasedError):
        await a.must_release()
    assert (await store.get("L")).owner == "b"


async def test_renewal_keeps_acquired(store: AsyncInMemoryStore) -> None:
    lock = AsyncLock(store, "L", owner="a")
    await lock.acquire(TTL)
    acquired, expires = lock.acquired, lock.expires
    await asyncio.sleep(0.01)
    await lock.acquire(TTL)
    assert lock.acquired == acquired
    assert lock.expires > expires


async def test_keep_alive_preconditions(store: AsyncInMemoryStore) -> None:
    lock = AsyncLock(store, "L", owner="a")
    with pytest.raises(NotAcquiredError):
        lock.keep_alive(timedelta(milliseconds=100))
    await lock.acquire(TTL)
    with pytest.raises(InvalidWindowError):
        lock.keep_alive(TTL)
    assert lock.keep_alive_active is False


async def test_keep_alive_renews_until_release(store: AsyncInMemoryStore) -> None:
    lock = AsyncLock(store, "L", owner="a")
    await lock.acquire(timedelta(milliseconds=300))
    lock.keep_alive(timedelta(milliseconds=200))
    lock.keep_alive(timedelta(milliseconds=200))

    for _ in range(50):
        await asyncio.sleep(0.02)
        assert lock.is_acquired() is True
    with pytest.raises(LockHeldError):
        await AsyncLock(store, "L", owner="b").acquire(TTL)

    chain = lock._keep_alive
    await lock.release()
    await asyncio.wait_for(chain.wait(), timeout=1)
    assert lock.keep_alive_active is False
    assert await store.get("L") is None


async def test_async_context_manager_releases(store: AsyncInMemoryStore) -> None:
    async with AsyncLock(store, "L", owner="a") as lock:
        await lock.acquire(TTL)
    assert await store.get("L") is None
    assert lock.is_released() is True


async def test_stop_keep_alive_lets_lease_expire(store: AsyncInMemoryStore) -> None:
    lock = AsyncLock(store, "L", owner="a")
    await lock.acquire(timedelta(milliseconds=300))
    lock.keep_alive(timedelta(milliseconds=200))
    chain = lock._keep_alive
    lock.stop_keep_alive()
    assert lock.keep_alive_active is False
    await asyncio.wait_for(chain.wait(), timeout=1)

    await asyncio.sleep(0.3)
    assert lock.is_acquired() is False
    await AsyncLock(store, "L", owner="b").acquire(TTL)


@pytest.mark.parametrize("error", [StoreError("connection reset", status_code=503), KeyError("result")])
async def test_renewal_failures_are_logged_and_retried(
    error: Exception, caplog: pytest.LogCaptureFixture
) -> None:
    class FailingOnceStore(AsyncInMemoryStore):
        upserts = 0

        async def conditional_upsert(self, lock_id, script):
            self.upserts += 1
            if self.upserts == 2:
                raise error
            return await super().conditional_upsert(lock_id, script)

    caplog.set_level(logging.WARNING, logger="eslock.keepalive")
    failing = FailingOnceStore()
    lock = AsyncLock(failing, "L", owner="a")
    await lock.acquire(timedelta(milliseconds=300))
    lock.keep_alive(timedelta(milliseconds=200))

    for _ in range(40):
        await asyncio.sleep(0.02)
        assert lock.is_acquired() is True
    assert failing.upserts >= 4
    assert lock.keep_alive_active is True
    assert any("Renewal of lock 'L' failed" in r.getMessage() for r in caplog.records)
    await lock.release()
