from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    the presentation layer can switch on without parsing messages:
    - validation_error (400)
    - invalid_grant (400)
    - unauthorized (401)
    - forbidden / authorization_expired / locked (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidGrantError(ServiceError):
    """Code, verifier or refresh token rejected (400).

    The message never varies with the underlying cause.
    """
    status_code = 400
    error_code = "invalid_grant"

    def __init__(self, message: str = "invalid grant", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Wrong credential or one-time code (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Operation not allowed in the current state (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthorizationExpiredError(ForbiddenError):
    """Authorization session token unknown or expired (403)."""
    error_code = "authorization_expired"

    def __init__(self, message: str = "authorization expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LockedError(ForbiddenError):
    """Attempt or send threshold exceeded (403)."""
    error_code = "locked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidGrantError",
    "AuthenticationError",
    "ForbiddenError",
    "AuthorizationExpiredError",
    "LockedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
