from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - unavailable (503)
    - timeout (504)
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
    """Malformed input, rejected before it reaches storage (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ServiceError):
    """Unknown token id, wrong kind, or secret mismatch (400)."""
    status_code = 400
    error_code = "invalid_token"


class ExpiredOrUsedError(InvalidTokenError):
    """Token exists but is past its expiry or already consumed (400).

    Shares the public code and message of InvalidTokenError; the subclass only
    exists so logs can tell the two apart.
    """


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthFailedError(AuthenticationError):
    """Terminal credential rejection; the caller has to sign in again (401)."""


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded or account locked (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Required configuration is missing, so the operation fails closed (500)."""


class TransientFailureError(ServiceError):
    """Storage, network or mail transport failure; safe to retry (503)."""
    status_code = 503
    error_code = "unavailable"


class RequestTimeoutError(TransientFailureError):
    """An outbound call did not complete within its deadline (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "ExpiredOrUsedError",
    "AuthenticationError",
    "AuthFailedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "TransientFailureError",
    "RequestTimeoutError",
]
