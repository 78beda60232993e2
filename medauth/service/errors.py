from __future__ import annotations

from typing import Any, Dict, List, Optional, Union


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable upper-case
    ``error_code`` that clients can branch on:
    - VALIDATION_ERROR (400)
    - UNAUTHORIZED, AUTH_REQUIRED, TOKEN_EXPIRED, INVALID_TOKEN,
      SESSION_EXPIRED (401)
    - FORBIDDEN (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - RATE_LIMITED (429)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class AuthRequiredError(AuthenticationError):
    """No usable bearer credential on the request (401)."""
    error_code = "AUTH_REQUIRED"


class TokenExpiredError(AuthenticationError):
    """Access token expired; the client should refresh (401)."""
    error_code = "TOKEN_EXPIRED"


class InvalidTokenError(AuthenticationError):
    """Token failed signature, structure or claim checks (401)."""
    error_code = "INVALID_TOKEN"


class SessionExpiredError(AuthenticationError):
    """Session was revoked or has expired (401)."""
    error_code = "SESSION_EXPIRED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthRequiredError",
    "TokenExpiredError",
    "InvalidTokenError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
