"""Error taxonomy shared by the credential custody components.

Every error carries the HTTP status, the OpenAI-style error ``type`` and a
machine readable ``code`` so the application layer can render a uniform
``{"error": {...}}`` envelope without inspecting exception classes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class KeyGateError(Exception):
    """Base class for all gateway errors."""

    status_code = 500
    error_type = "api_error"
    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class AuthFailure(str, Enum):
    MISSING_HEADER = "invalid_auth_header"
    INVALID_KEY = "invalid_api_key"
    SESSION_EXPIRED = "session_expired"
    BAD_ADMIN_PASSWORD = "invalid_password"


_AUTH_MESSAGES = {
    AuthFailure.MISSING_HEADER: "Invalid authorization header. Expected: Bearer <api_key>",
    AuthFailure.INVALID_KEY: "Invalid API key",
    AuthFailure.SESSION_EXPIRED: "Session expired or invalid. Please log in again.",
    AuthFailure.BAD_ADMIN_PASSWORD: "Invalid admin password",
}


class AuthError(KeyGateError):
    """Raised when a request fails API key, session or password checks."""

    status_code = 401
    error_type = "invalid_request_error"

    def __init__(self, reason: AuthFailure, message: Optional[str] = None) -> None:
        super().__init__(message or _AUTH_MESSAGES[reason], code=reason.value)
        self.reason = reason
        if reason is AuthFailure.BAD_ADMIN_PASSWORD:
            self.error_type = "authentication_error"


class InvalidRequestError(KeyGateError):
    """Raised for malformed request bodies."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class NotFoundError(KeyGateError):
    """Raised when an addressed resource does not exist."""

    status_code = 404
    error_type = "invalid_request_error"
    code = "not_found"


class RateLimitExceeded(KeyGateError):
    """Raised when a caller exceeds its request allowance for the window."""

    status_code = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"

    def __init__(self, limit: int, reset_at: float) -> None:
        super().__init__("Rate limit exceeded")
        self.limit = limit
        self.reset_at = reset_at


class ConfigurationError(KeyGateError):
    """Raised when an admin password hash is required but not configured."""

    code = "configuration_error"


class DecryptionError(KeyGateError):
    """Raised when ciphertext is tampered with or the password hash is wrong."""

    code = "decryption_failed"


class ExternalStoreError(KeyGateError):
    """Raised for I/O failures against the engine's credential files."""

    code = "external_store_error"


class PersistenceError(KeyGateError):
    """Raised when the key registry file cannot be read or written."""

    code = "persistence_error"


class CompletionError(KeyGateError):
    """Raised when the wrapped completion engine fails."""

    code = "completion_failed"


__all__ = [
    "AuthError",
    "AuthFailure",
    "CompletionError",
    "ConfigurationError",
    "DecryptionError",
    "ExternalStoreError",
    "InvalidRequestError",
    "KeyGateError",
    "NotFoundError",
    "PersistenceError",
    "RateLimitExceeded",
]
