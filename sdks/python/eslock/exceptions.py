"""eslock exception classes."""

from typing import Optional


class EsLockError(Exception):
    """Base exception for all eslock errors."""
    pass


class StoreError(EsLockError):
    """Raised when the document store rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(StoreError):
    """Raised when the document store cannot be reached."""
    pass


class ConflictError(StoreError):
    """Raised when the store reports a version conflict on a write."""
    pass


class LockHeldError(EsLockError):
    """Raised when the lock is held by another owner with a valid lease."""

    def __init__(self, message: str, lock_id: str = None, holder: str = None):
        super().__init__(message)
        self.lock_id = lock_id
        self.holder = holder


class AlreadyReleasedError(EsLockError):
    """Raised by a strict release when nothing held by us was removed."""
    pass


class NotAcquiredError(EsLockError):
    """Raised when keep-alive is requested before a successful acquire."""
    pass


class InvalidWindowError(EsLockError):
    """Raised when the keep-alive margin is not smaller than the lease TTL."""
    pass


class ValidationError(EsLockError):
    """Raised when input validation fails."""
    pass
