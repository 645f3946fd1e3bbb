from __future__ import annotations

from typing import Any


class PulseboardError(Exception):
    """Base for errors that map onto a client-facing error envelope."""

    code = "ERROR"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def headers(self) -> dict[str, str]:
        return {}

    def envelope(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        error.update(self.details)
        return {"error": error}


class Unauthenticated(PulseboardError):
    code = "UNAUTHENTICATED"
    status_code = 401


class BadPayload(PulseboardError):
    code = "BAD_PAYLOAD"
    status_code = 400


class Forbidden(PulseboardError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(PulseboardError):
    code = "NOT_FOUND"
    status_code = 404


class RateLimited(PulseboardError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, *, retry_after_s: int, **details: Any) -> None:
        super().__init__(message, retry_after_s=retry_after_s, **details)
        self.retry_after_s = retry_after_s

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after_s)}


class PersistenceFailure(PulseboardError):
    """A durable log write failed.

    Raised by the log itself and absorbed by the writer; never rendered to a
    device.
    """

    code = "PERSISTENCE_FAILURE"
    status_code = 500
