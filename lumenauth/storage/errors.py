from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A directory uniqueness constraint rejected a write.

    ``field`` names the natural key that collided (``email``, ``client_id``,
    ``social_account``) so callers can build a specific conflict message.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = {"field": field, **(detail or {})} if field else (detail or {})


class DirectoryUnavailable(RuntimeError):
    """The directory backend could not serve a request."""


__all__ = ["ConstraintViolation", "DirectoryUnavailable"]
