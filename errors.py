"""Error taxonomy shared by the stores, the auth gate and the routes"""


class AppError(Exception):
    """Base error; carries the HTTP status and extra JSON fields"""
    status_code = 500

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        body = {'error': self.message}
        body.update(self.extra)
        return body


class ValidationError(AppError):
    status_code = 400


class Unauthenticated(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class InternalError(AppError):
    status_code = 500
