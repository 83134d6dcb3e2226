"""
Error taxonomy shared by every service.

Each error is a FastAPI ``HTTPException`` with a fixed status code, so services
raise them exactly where a route would raise ``HTTPException(status_code=...,
detail=...)``. The handlers registered in ``main.py`` render them as the
``{"success": false, "message": ...}`` envelope.
"""
from fastapi import HTTPException


class ServiceError(HTTPException):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(status_code=type(self).status_code, detail=message)
        self.message = message


class ValidationError(ServiceError):
    """Missing or malformed input."""
    status_code = 400


class ConflictError(ServiceError):
    """Duplicate pending request, duplicate content text, re-assignment."""
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class AuthorizationError(ServiceError):
    """Principal lacks the role or does not own the target record."""
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class DeliveryError(ServiceError):
    """Outbound email could not be delivered after all retries."""
    status_code = 500
