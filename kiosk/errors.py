"""Error taxonomy for the kiosk console.

Each error carries the HTTP status the API layer answers with; the server's
exception handler turns any :class:`KioskError` into a JSON error body.
"""

from __future__ import annotations


class KioskError(Exception):
    status_code: int = 500
    code: str = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}


class InvalidInput(KioskError):
    """Malformed address/URL or a missing required field. Nothing was mutated."""

    status_code = 400
    code = "invalid_input"


class Unauthorized(KioskError):
    status_code = 401
    code = "unauthorized"


class RateLimited(KioskError):
    """Check-in budget exceeded for the current window."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class CapacityExceeded(KioskError):
    status_code = 503
    code = "capacity_exceeded"


class QueueFull(KioskError):
    status_code = 507
    code = "queue_full"


class Unavailable(KioskError):
    """No usable discovery source, or a remote-execution prerequisite is missing."""

    status_code = 503
    code = "unavailable"


class RemoteExecutionFailure(KioskError):
    """One host's remote command failed or the host was unreachable."""

    status_code = 502
    code = "remote_execution_failed"

    def __init__(self, host: str, message: str = "") -> None:
        super().__init__(message or f"Remote execution failed on {host}")
        self.host = host
