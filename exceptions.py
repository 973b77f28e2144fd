"""
Domain Exceptions
Error taxonomy shared by services and mapped to HTTP responses in app.py
"""

from typing import Any, Dict, Optional


class CareCircleError(Exception):
    """Base class for all domain errors"""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CareCircleError):
    """Malformed or missing input"""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(CareCircleError):
    """No or invalid credential"""
    status_code = 401
    error_code = "authentication_error"


class AuthorizationError(CareCircleError):
    """Valid actor without the required capability"""
    status_code = 403
    error_code = "authorization_error"


class NotFoundError(CareCircleError):
    status_code = 404
    error_code = "not_found"


class ConflictError(CareCircleError):
    """Duplicate invite, already-accepted invitation or a lost write race"""
    status_code = 409
    error_code = "conflict"


class ExpiredError(CareCircleError):
    """Invitation or token past its expiry"""
    status_code = 410
    error_code = "expired"


class InternalError(CareCircleError):
    """Store or transaction failure"""
    status_code = 500
    error_code = "internal_error"


__all__ = [
    "CareCircleError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "InternalError",
]
