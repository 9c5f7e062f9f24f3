"""Keep-alive renewal chain tests."""

import logging
import time
from datetime import datetime, timedelta, timezone

import pytest
from eslock import InMemoryStore, Lock, LockHeldError, StoreError
from eslock.keepalive import MIN_DELAY, renewal_delay

TTL = timedelta(milliseconds=300)
BEFORE_EXPIRY = timedelta(milliseconds=200)


class CountingStore(InMemoryStore):
    """In-memory store that counts upserts and can fail some of them."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.upserts = 0
        self.failures = failures

    def conditional_upsert(self, lock_id, script):
        self.upserts += 1
        if self.upserts > 1 and self.failures > 0:
            self.failures -= 1
            raise StoreError("connection reset", status_code=503)
        return super().conditional_upsert(lock_id, script)


def hold_for(lock: Lock, seconds: float) -> bool:
    """Poll is_acquired() for `seconds`; True if it never dropped."""
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        if not lock.is_acquired():
            return False
        time.sleep(0.02)
    return True


def test_renewal_delay_targets_window_before_expiry() -> None:
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    expires = now + timedelta(seconds=30)
    assert renewal_delay(expires, timedelta(seconds=5), now) == timedelta(seconds=25)


def test_renewal_delay_is_clamped_when_overdue() -> None:
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    assert renewal_delay(now - timedelta(seconds=1), timedelta(seconds=5), now) == MIN_DELAY
    assert renewal_delay(None, timedelta(seconds=5), now) == MIN_DELAY


def test_keep_alive_holds_lock_over_several_ttls() -> None:
    store = CountingStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    acquired = lock.acquired
    lock.keep_alive(BEFORE_EXPIRY)
    assert lock.keep_alive_active is True

    assert hold_for(lock, 1.0) is True
    assert store.upserts >= 3
    assert lock.acquired == acquired

    lock.release()
    assert lock.keep_alive_active is False
    assert store.get("L") is None


def test_keep_alive_blocks_other_owners() -> None:
    store = InMemoryStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)
    time.sleep(TTL.total_seconds() * 2)
    with pytest.raises(LockHeldError):
        Lock(store, "L", owner="b").acquire(TTL)
    lock.release()


def test_keep_alive_is_idempotent() -> None:
    store = CountingStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)
    first = lock._keep_alive
    lock.keep_alive(BEFORE_EXPIRY)
    lock.keep_alive(timedelta(milliseconds=50))
    assert lock._keep_alive is first
    lock.stop_keep_alive(wait=True)


def test_release_stops_renewals() -> None:
    store = CountingStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)
    time.sleep(0.15)
    lock.release()
    lock.stop_keep_alive(wait=True)
    count = store.upserts
    time.sleep(0.3)
    assert store.upserts == count
    assert store.get("L") is None
    assert lock.is_released() is True


def test_stop_keep_alive_lets_lease_expire() -> None:
    store = InMemoryStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)
    lock.stop_keep_alive(wait=True)
    assert lock.keep_alive_active is False
    time.sleep(TTL.total_seconds())
    assert lock.is_acquired() is False
    Lock(store, "L", owner="b").acquire(TTL)


def test_keep_alive_can_be_rearmed_after_stop() -> None:
    store = CountingStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)
    lock.stop_keep_alive()
    lock.keep_alive(BEFORE_EXPIRY)
    assert lock.keep_alive_active is True
    assert hold_for(lock, 0.6) is True
    lock.release()


def test_renewal_failures_are_logged_and_retried(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="eslock.keepalive")
    store = CountingStore(failures=1)
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)

    assert hold_for(lock, 0.8) is True
    assert store.failures == 0
    assert store.upserts >= 4
    assert any("Renewal of lock 'L' failed" in r.getMessage() for r in caplog.records)
    lock.release()


def test_unexpected_renewal_errors_do_not_end_the_chain(caplog: pytest.LogCaptureFixture) -> None:
    class GlitchingStore(InMemoryStore):
        upserts = 0

        def conditional_upsert(self, lock_id, script):
            self.upserts += 1
            if self.upserts == 2:
                raise KeyError("result")
            return super().conditional_upsert(lock_id, script)

    caplog.set_level(logging.WARNING, logger="eslock.keepalive")
    store = GlitchingStore()
    lock = Lock(store, "L", owner="a")
    lock.acquire(TTL)
    lock.keep_alive(BEFORE_EXPIRY)

    assert hold_for(lock, 0.8) is True
    assert store.upserts >= 4
    assert lock.keep_alive_active is True
    failures = [r for r in caplog.records if "Renewal of lock 'L' failed" in r.getMessage()]
    assert failures and failures[0].exc_info is not None
    lock.release()
