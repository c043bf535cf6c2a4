from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` (the failure kind) and a
    default HTTP ``status_code``. Callers may override the status where the
    same kind surfaces differently, e.g. an unknown refresh token is
    ``not_found`` but answered with 401.

    Codes:
    - not_found (404)
    - expired (400)
    - invalid (400)
    - revoked (401)
    - transport_error (502)
    - validation_error (400)
    - unauthorized (401)
    - rate_limited (429)
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


class NotFoundError(ServiceError):
    """No matching user or credential record (404)."""
    status_code = 404
    error_code = "not_found"


class ExpiredError(ServiceError):
    """Credential exists but is past its expiry (400)."""
    status_code = 400
    error_code = "expired"


class InvalidError(ServiceError):
    """Credential failed verification (400)."""
    status_code = 400
    error_code = "invalid"


class RevokedError(ServiceError):
    """Refresh token was explicitly revoked (401)."""
    status_code = 401
    error_code = "revoked"


class TransportError(ServiceError):
    """Email delivery failed (502)."""
    status_code = 502
    error_code = "transport_error"


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "NotFoundError",
    "ExpiredError",
    "InvalidError",
    "RevokedError",
    "TransportError",
    "ValidationError",
    "AuthenticationError",
    "RateLimitedError",
]
