from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Transient persistence failure (connection, pool or statement timeout).

    The only failure class callers may retry; the operation that raised it left
    prior state untouched.
    """

    retry_after_seconds = 1

    def __init__(self, message: str = "storage unavailable", *, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


__all__ = ["ConstraintViolation", "StorageUnavailable"]
