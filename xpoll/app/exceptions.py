"""Custom exceptions for the poll service."""

from typing import Any


class XPollException(Exception):
    """Base class for service exceptions with HTTP status code.

    Each subclass defines its ``status_code`` and the machine-readable
    ``code`` clients branch on. ``message`` is safe to show to end users.
    """
    status_code: int = 500
    code: str = "INTERNAL"
    error: str = "Internal server error"

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Convert to the API error body."""
        return {
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }


class RateLimitExceededError(XPollException):
    """Raised when a client exceeds the quota of a limit class.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "RATE_LIMIT"
    error = "Too many requests"

    def __init__(self, retry_after: int, limit_class: str = "default"):
        self.retry_after = retry_after
        self.limit_class = limit_class
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds.")

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["retry_after"] = self.retry_after
        return body


class CSRFValidationError(XPollException):
    """Raised when a state-changing request fails CSRF validation.

    ``reason`` tells the client whether fetching a fresh token is worth a
    retry (``token_missing`` / ``token_invalid``) or not.
    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    code = "CSRF_INVALID"
    error = "CSRF validation failed"

    MESSAGES = {
        "token_missing": "CSRF token not provided",
        "token_invalid": "Invalid or expired CSRF token",
        "identity_missing": "No authenticated user",
        "validation_error": "CSRF token could not be validated",
    }

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(self.MESSAGES.get(reason, "CSRF validation failed"))

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["reason"] = self.reason
        return body


class SessionInvalidError(XPollException):
    """Raised when a session is missing, terminated or expired.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = "SESSION_INVALID"
    error = "Session invalid"

    def __init__(self, reason: str = "not_found", message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Session terminated due to {reason}")

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["reason"] = self.reason
        return body


class AuthenticationRequiredError(XPollException):
    """Raised when an endpoint needs an authenticated identity.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"
    error = "Authentication required"

    def __init__(self, message: str = "Please sign in to continue."):
        super().__init__(message)


class ValidationError(XPollException):
    """Raised when request input is invalid. Maps to HTTP 400."""
    status_code = 400
    code = "VALIDATION"
    error = "Invalid request"


class NotFoundError(XPollException):
    """Raised when a poll or option does not exist. Maps to HTTP 404."""
    status_code = 404
    code = "NOT_FOUND"
    error = "Not found"

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"The requested {resource.lower()} was not found.")


class UpstreamServiceError(XPollException):
    """Raised when the hosted auth/database service fails or is unreachable.

    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502
    code = "UPSTREAM"
    error = "Upstream service error"

    def __init__(self, message: str = "The backing service is unavailable. Please try again later."):
        super().__init__(message)


def internal_error_body(request_id: str, exc: Exception, debug: bool = False) -> dict[str, Any]:
    """Body of a 500 response for an unhandled exception.

    The exception text is only included in debug mode.
    """
    body = XPollException().to_response()
    body["request_id"] = request_id
    if debug:
        body["message"] = str(exc)
        body["exception_type"] = type(exc).__name__
    return body
