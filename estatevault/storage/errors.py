from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for persistence failures surfaced by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or foreign-key constraint rejects a write."""


__all__ = ["StorageError", "ConstraintViolation"]
