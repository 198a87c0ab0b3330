from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or foreign-key constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissing(RuntimeError):
    """Raised at startup when the Postgres schema has not been installed."""


__all__ = ["ConstraintViolation", "SchemaMissing"]
