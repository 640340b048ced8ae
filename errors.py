"""Application errors. Each one knows the HTTP status it maps to."""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AppError):
    status_code = 400


class InvalidState(AppError):
    status_code = 400


class NotAuthenticated(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class DeliveryFailed(AppError):
    """Outgoing email could not be handed to the SMTP server."""
    status_code = 502


class Unavailable(AppError):
    status_code = 503
