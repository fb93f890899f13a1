"""Domain errors raised by the stores, the scoping layer and the routes.

Every error carries the HTTP status it maps to; ``server.py`` registers a single
exception handler that renders them as ``{"detail": ...}``.
"""


class AppError(Exception):
    status_code = 500
    default_detail = "Internal Server Error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(AppError):
    status_code = 400
    default_detail = "Invalid input"


class CaretakerNotFound(ValidationError):
    default_detail = (
        "The specified Caretaker username does not exist. "
        "Please check the spelling and try again."
    )


class Conflict(AppError):
    status_code = 400
    default_detail = "Conflict"


class DuplicateUsername(Conflict):
    default_detail = "Username already exists"


class Unauthenticated(AppError):
    status_code = 401
    default_detail = "Not authenticated"


class InvalidCredentials(Unauthenticated):
    default_detail = "Incorrect username or password"


class Forbidden(AppError):
    status_code = 403
    default_detail = "Access denied for this patient"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class SpeechUnavailable(AppError):
    status_code = 500
    default_detail = "Failed to generate speech"


class ExternalServiceDegraded(AppError):
    """Raised inside the enrichment layer only; callers never see it."""

    status_code = 502
    default_detail = "External service unavailable"
