"""Error taxonomy for the insight service.

Every error carries the HTTP status it maps to so the exception handlers in
``main.py`` can render it without a lookup table.
"""


class InsightError(Exception):
    """Base class for request-scoped failures."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.error)
        self.message = message or self.error


class ValidationError(InsightError):
    """Malformed or missing required fields."""

    status_code = 400
    error = "Validation error"


class AuthenticationError(InsightError):
    """Absent or invalid credential."""

    status_code = 401
    error = "Unauthorized"


class AuthorizationError(InsightError):
    """Valid credential, insufficient role."""

    status_code = 403
    error = "Forbidden"


class NotFoundError(InsightError):
    """Lifecycle operation on an unknown identifier."""

    status_code = 404
    error = "Not found"


class StorageError(InsightError):
    """The relational store failed the call."""

    status_code = 500
    error = "Storage error"
