from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for storage-layer failures.

    ``detail`` carries structured context for logging; it is never shown to
    API clients verbatim.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class AlreadyExists(ConstraintViolation):
    """A create collided with an existing login, subject id or token."""


class NotFound(StorageError):
    """A lookup by key matched nothing."""


class StorageUnavailable(StorageError):
    """The backing store cannot execute the operation at all."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "AlreadyExists",
    "NotFound",
    "StorageUnavailable",
]
