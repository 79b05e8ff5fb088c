from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write would break a uniqueness or last-credential rule of the store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        """Name of the offending column, when the store reported one."""
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
