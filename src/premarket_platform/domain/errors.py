"""Error taxonomy for the grant-access engine.

Every error carries the HTTP status it maps to; ``app.main`` registers a
single exception handler that renders them.
"""


class AccessError(Exception):
    """Base exception for all grant-access domain errors."""

    status_code = 500
    code = "ACCESS_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class NotFound(AccessError):
    """Raised when a record, request, or agent profile is absent."""

    status_code = 404
    code = "NOT_FOUND"


class Conflict(AccessError):
    """Raised on duplicate access requests and lost lock races."""

    status_code = 409
    code = "CONFLICT"


class Forbidden(AccessError):
    """Raised on visibility, ownership, or role violations."""

    status_code = 403
    code = "FORBIDDEN"


class BadRequest(AccessError):
    """Raised on malformed identifiers or invalid amounts."""

    status_code = 400
    code = "BAD_REQUEST"


class InvalidSignature(AccessError):
    """Raised when a webhook payload fails signature verification."""

    status_code = 400
    code = "INVALID_SIGNATURE"


class UpstreamUnavailable(AccessError):
    """Raised when the payment gateway call failed. Safe to retry."""

    status_code = 503
    code = "UPSTREAM_UNAVAILABLE"
