"""Domain errors raised by models and validators.

The HTTP layer translates every ``ApiError`` into a ``{status, message}``
JSON body; nothing below the routers knows about HTTP responses.
"""


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str = "") -> None:
        self.message = message
        super().__init__(message)


class BadRequest(ApiError):
    """Malformed or disallowed input."""

    status_code = 400


class Unauthorized(ApiError):
    """Missing or invalid credential."""

    status_code = 401


class Forbidden(ApiError):
    """Valid credential, but the action is not allowed."""

    status_code = 403


class RateLimitExceeded(Forbidden):
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 0) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class NotFound(ApiError):
    """Referenced resource does not exist."""

    status_code = 404


class Conflict(ApiError):
    """Uniqueness violation."""

    status_code = 409


class UnexpectedError(ApiError):
    """Storage fault, failed random generation or broken transaction."""

    status_code = 500


class InvalidIdentityKey(ValueError):
    """String is not a UUID-shaped identifier."""
