"""eslock data models."""

import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


_FRACTION = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    """Serialize a timestamp the way it is stored in lock documents."""
    return value.astimezone(timezone.utc).isoformat()


def parse_time(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # fromisoformat on 3.10 only takes 3 or 6 fraction digits
    value = _FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class LockPhase(str, Enum):
    """Lock lifecycle phase as seen from the local state."""
    NEW = "new"
    HELD = "held"
    RELEASED = "released"
    EXPIRED = "expired"


class UpsertResult(str, Enum):
    """Outcome of a conditional upsert reported by the store."""
    CREATED = "created"
    UPDATED = "updated"
    NOOP = "noop"


@dataclass
class LockDocument:
    """A lease as persisted in the lock index."""
    owner: str
    acquired: datetime
    expires: datetime

    def to_source(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "acquired": format_time(self.acquired),
            "expires": format_time(self.expires),
        }

    @classmethod
    def from_source(cls, source: Dict[str, Any]) -> "LockDocument":
        return cls(
            owner=source["owner"],
            acquired=parse_time(source["acquired"]),
            expires=parse_time(source["expires"]),
        )


@dataclass
class UpsertOutcome:
    """Result of a conditional upsert plus the document after it, if returned."""
    result: UpsertResult
    document: Optional[LockDocument] = None


@dataclass(frozen=True)
class LockSnapshot:
    """Consistent copy of a lock's local state."""
    lock_id: str
    owner: str
    acquired: Optional[datetime]
    expires: Optional[datetime]
    last_ttl: Optional[timedelta]
    is_acquired: bool
    is_released: bool
    keep_alive_active: bool


class LockState:
    """Synchronized container for the local view of one lock.

    Every read and write goes through a single guard. Network calls are
    made by the callers outside of it; only their outcomes are committed
    here.
    """

    def __init__(self, lock_id: str, owner: str):
        self._guard = threading.Lock()
        self._snapshot = LockSnapshot(
            lock_id=lock_id,
            owner=owner,
            acquired=None,
            expires=None,
            last_ttl=None,
            is_acquired=False,
            is_released=False,
            keep_alive_active=False,
        )

    @property
    def lock_id(self) -> str:
        return self._snapshot.lock_id

    def snapshot(self) -> LockSnapshot:
        with self._guard:
            return self._snapshot

    def set_owner(self, owner: str) -> None:
        with self._guard:
            self._snapshot = replace(self._snapshot, owner=owner)

    def commit_acquire(self, acquired: datetime, expires: datetime, ttl: timedelta) -> None:
        """Record a successful acquire or renewal."""
        with self._guard:
            self._snapshot = replace(
                self._snapshot,
                acquired=acquired,
                expires=expires,
                last_ttl=ttl,
                is_acquired=True,
                is_released=False,
            )

    def mark_released(self) -> None:
        with self._guard:
            self._snapshot = replace(self._snapshot, is_acquired=False, is_released=True)

    def start_keep_alive(self) -> bool:
        """Set the keep-alive guard. Returns False if a chain is already active."""
        with self._guard:
            if self._snapshot.keep_alive_active:
                return False
            self._snapshot = replace(self._snapshot, keep_alive_active=True)
            return True

    def end_keep_alive(self) -> None:
        with self._guard:
            self._snapshot = replace(self._snapshot, keep_alive_active=False)

    def is_acquired(self, now: Optional[datetime] = None) -> bool:
        state = self.snapshot()
        now = now or utcnow()
        return state.is_acquired and state.expires is not None and state.expires > now

    def is_released(self, now: Optional[datetime] = None) -> bool:
        state = self.snapshot()
        now = now or utcnow()
        return state.is_released or (state.expires is not None and not state.expires > now)

    def phase(self, now: Optional[datetime] = None) -> LockPhase:
        state = self.snapshot()
        now = now or utcnow()
        if state.is_released:
            return LockPhase.RELEASED
        if state.expires is None:
            return LockPhase.NEW
        if state.expires > now:
            return LockPhase.HELD if state.is_acquired else LockPhase.NEW
        return LockPhase.EXPIRED
