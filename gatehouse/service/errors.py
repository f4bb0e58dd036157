from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - delivery_failed (502)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class UnauthorizedError(ServiceError):
    """Credential, token or code did not check out (401)."""
    status_code = 401
    error_code = "unauthorized"


class SecondFactorExhaustedError(UnauthorizedError):
    """Too many wrong codes; a new code must be requested."""
    pass


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryError(ServiceError):
    """Outbound message could not be delivered (502)."""
    status_code = 502
    error_code = "delivery_failed"


class ServiceUnavailableError(ServiceError):
    """A collaborator timed out or a lock could not be taken (503)."""
    status_code = 503
    error_code = "unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "SecondFactorExhaustedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DeliveryError",
    "ServiceUnavailableError",
]
