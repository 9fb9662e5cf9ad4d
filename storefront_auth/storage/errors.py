from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or FK constraint is violated (duplicate email, unknown user)."""


class StoreUnavailable(StorageError):
    """The backend could not be reached or failed mid-operation."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
