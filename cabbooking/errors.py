"""
Operational error taxonomy.

Every expected failure is an ``AppError`` carrying a stable HTTP status code
and a client-safe message.  Anything else is treated as a bug and surfaced
as a generic 500 by the API layer.
"""


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequestError(AppError):
    status_code = 400
    default_message = "Bad request"


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication failed. Please log in."


class AuthorizationError(AppError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class TooManyRequestsError(AppError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


class ServiceUnavailableError(AppError):
    status_code = 503
    default_message = "Service temporarily unavailable"
