"""Background lease renewal.

A keep-alive chain re-acquires its lock shortly before the lease expires,
over and over, until the lock is released or the chain is cancelled.
Renewal failures are logged and never reach the caller: there is nobody to
hand them to once the chain runs on its own. The chain keeps trying after a
failure, one renewal interval later.

A renewal already submitted to the store cannot be interrupted. It finishes,
and the chain stops at its next scheduling decision.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .exceptions import EsLockError
from .models import LockState, utcnow

logger = logging.getLogger(__name__)

MIN_DELAY = timedelta(milliseconds=1)


def renewal_delay(expires: Optional[datetime], before_expiry: timedelta,
                  now: Optional[datetime] = None) -> timedelta:
    """Time left until `before_expiry` ahead of `expires`, never below MIN_DELAY."""
    if expires is None:
        return MIN_DELAY
    delay = expires - before_expiry - (now or utcnow())
    return max(delay, MIN_DELAY)


class _Chain:
    def __init__(self, state: LockState, before_expiry: timedelta):
        self.state = state
        self.before_expiry = before_expiry

    def next_delay(self, renewed: bool) -> timedelta:
        snapshot = self.state.snapshot()
        if renewed or snapshot.last_ttl is None:
            return renewal_delay(snapshot.expires, self.before_expiry)
        return max(snapshot.last_ttl - self.before_expiry, MIN_DELAY)

    def failed(self, error: Exception) -> None:
        logger.warning(
            "Renewal of lock %r failed, retrying on the next tick: %s",
            self.state.lock_id, error,
            exc_info=not isinstance(error, EsLockError),
        )


class KeepAlive(_Chain):
    """Renewal chain running on a daemon thread.

    `renew` performs one re-acquisition and returns False when the lock has
    been released in the meantime, which ends the chain.
    A cancelled chain leaves the active flag to whoever cancelled it.
    """

    def __init__(self, state: LockState, renew: Callable[[], bool], before_expiry: timedelta):
        super().__init__(state, before_expiry)
        self._renew = renew
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"eslock-keepalive-{state.lock_id}", daemon=True
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def on_chain_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def _run(self) -> None:
        delay = self.next_delay(renewed=True)
        try:
            while not self._cancelled.wait(delay.total_seconds()):
                if self.state.snapshot().is_released:
                    break
                try:
                    if not self._renew():
                        break
                    delay = self.next_delay(renewed=True)
                except Exception as e:
                    self.failed(e)
                    delay = self.next_delay(renewed=False)
        finally:
            if not self.cancelled:
                self.state.end_keep_alive()
            logger.debug("Keep-alive for lock %r stopped", self.state.lock_id)


class AsyncKeepAlive(_Chain):
    """Renewal chain running as an asyncio task on the current loop."""

    def __init__(self, state: LockState, renew: Callable[[], Awaitable[bool]],
                 before_expiry: timedelta):
        super().__init__(state, before_expiry)
        self._renew = renew
        self._cancelled = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"eslock-keepalive-{self.state.lock_id}"
        )

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def _sleep(self, delay: timedelta) -> bool:
        """Wait out `delay`. Returns True if the chain was cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), delay.total_seconds())
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        delay = self.next_delay(renewed=True)
        try:
            while not await self._sleep(delay):
                if self.state.snapshot().is_released:
                    break
                try:
                    if not await self._renew():
                        break
                    delay = self.next_delay(renewed=True)
                except Exception as e:
                    self.failed(e)
                    delay = self.next_delay(renewed=False)
        finally:
            if not self.cancelled:
                self.state.end_keep_alive()
            logger.debug("Keep-alive for lock %r stopped", self.state.lock_id)
