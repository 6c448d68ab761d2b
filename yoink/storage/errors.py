from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a store cannot complete an operation (backend unavailable,
    connection lost, unexpected driver failure)."""

    def __init__(self, message: str, *, store: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.store = store
        self.cause = cause


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        store: str = "unknown",
    ):
        super().__init__(message, store=store)
        self.detail = detail or {}


__all__ = ["StorageError", "ConstraintViolation"]
