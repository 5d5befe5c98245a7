"""Domain errors raised below the route layer.

Every error carries the HTTP status it maps to; ``main.py`` registers a single
handler that turns them into the standard ``{success: false, message}`` body.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, detail: Any = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.detail = detail


class ValidationFailed(AppError):
    status_code = 400
    default_message = "Validation error"


class AuthenticationFailed(AppError):
    status_code = 401
    default_message = "Invalid credentials"


class Forbidden(AppError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Already exists"


class InvalidTransition(AppError):
    """A verification or payment state change whose precondition does not hold."""

    status_code = 400
    default_message = "Transition not allowed"


class StaleProfile(Conflict):
    """The garage profile changed since the caller read it."""

    default_message = "Garage profile was modified by another request, reload and retry"


class GatewayError(AppError):
    """The payment provider was unreachable, timed out, or rejected the call."""

    status_code = 500
    default_message = "Error connecting to payment gateway"


class ConfigError(AppError):
    default_message = "Invalid configuration"
