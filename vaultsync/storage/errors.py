from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write collided with a unique key the caller did not expect to exist."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    @property
    def detail(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


__all__ = ["ConstraintViolation"]
