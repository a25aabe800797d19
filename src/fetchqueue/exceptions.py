"""Exception hierarchy for fetchqueue."""

from __future__ import annotations

from typing import Any


class FetchQueueError(Exception):
    """Base exception for all fetchqueue errors."""


class HttpError(FetchQueueError):
    """Raised when an HTTP exchange fails.

    ``status`` is the HTTP status code (synthetic for transport failures) and
    ``data`` is the parsed response body, whatever its content type.
    """

    def __init__(self, status: int, data: Any = None, message: str | None = None) -> None:
        self.status = status
        self.data = data
        super().__init__(message or _extract_message(data, f"HTTP error: {status}"))


class ValidationError(HttpError):
    """Raised when the server rejects input as invalid (400)."""


class AuthenticationError(HttpError):
    """Raised when authentication fails (401)."""


class AuthorizationError(HttpError):
    """Raised when the caller lacks permission (403)."""


class NotFoundError(HttpError):
    """Raised when a requested resource does not exist (404)."""


class ConflictError(HttpError):
    """Raised on duplicate or conflicting resources (409)."""


class RateLimitError(HttpError):
    """Raised when the server throttles the caller (429)."""


class ServerError(HttpError):
    """Raised on unexpected server-side errors (5xx)."""


class NetworkError(ServerError):
    """Raised when no response was received at all.

    Reported as a synthetic 500 whose body discriminates between an
    unreachable host (``"offline"``) and any other transport failure
    (``"fetch"``).
    """

    def __init__(self, reason: str = "fetch", message: str | None = None) -> None:
        super().__init__(500, {"status": 500, "error": reason}, message or f"Network error: {reason}")

    @property
    def reason(self) -> str:
        return self.data["error"]


class CredentialUnavailableError(AuthenticationError):
    """Raised when a call could not obtain credentials within its queue budget."""

    def __init__(self, message: str = "No credentials available") -> None:
        super().__init__(401, {"status": 401, "error": "credentials"}, message)


_STATUS_ERRORS: dict[int, type[HttpError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    429: RateLimitError,
}


def _extract_message(data: Any, fallback: str) -> str:
    """Best-effort extraction of the server's error message."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        for key in ("message", "error_description", "detail"):
            if isinstance(data.get(key), str):
                return data[key]
        if isinstance(error, str):
            return error
    if isinstance(data, str) and data.strip():
        return data.strip()[:200]
    return fallback


def error_for_status(status: int, data: Any = None) -> HttpError:
    """Build the exception matching an HTTP status code."""
    if status in _STATUS_ERRORS:
        return _STATUS_ERRORS[status](status, data)
    if status >= 500:
        return ServerError(status, data, _extract_message(data, f"Server error: {status}"))
    return HttpError(status, data, _extract_message(data, f"Unexpected error: {status}"))
