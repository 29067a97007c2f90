from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A credential-store rule was broken: duplicate email or username,
    unknown organizational unit, or a security-answer limit."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
