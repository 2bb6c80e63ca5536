"""
Application errors

Each error carries the HTTP status the API answers with; main.py turns them
into {"error": message} bodies.
"""

from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class Unauthorized(AppError):
    """Caller is not a party to the resource, or the resource is in the wrong state."""

    status_code = 403


class QuotaExceeded(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409
