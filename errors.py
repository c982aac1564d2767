"""
Error taxonomy shared by the API.

Handlers and services raise these; main.py turns them into JSON responses
of the form {"detail": ..., "code": ...}.
"""
from typing import Any, List, Optional


class ApiError(Exception):
    status_code = 500
    code = "server_error"
    message = "Server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationFailed(ApiError):
    status_code = 400
    code = "validation_failed"
    message = "Validation failed"


class Unauthenticated(ApiError):
    status_code = 401
    code = "unauthenticated"
    message = "Access denied. No token provided."


class AccountDeactivated(ApiError):
    status_code = 401
    code = "account_deactivated"
    message = "Account is deactivated"


class InvalidCredentials(ApiError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials"


class Forbidden(ApiError):
    status_code = 403
    code = "forbidden"
    message = "Access denied. Insufficient permissions."


class NotFound(ApiError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class InvalidOrder(ApiError):
    status_code = 400
    code = "invalid_order"
    message = "Invalid order"


class InvalidTransition(ApiError):
    status_code = 409
    code = "invalid_transition"
    message = "Invalid status transition"


class Conflict(ApiError):
    status_code = 409
    code = "conflict"
    message = "Document was modified concurrently, please retry"


class AccountLocked(ApiError):
    status_code = 423
    code = "account_locked"
    message = "Account temporarily locked due to too many failed login attempts"


class DatabaseUnavailable(ApiError):
    status_code = 500
    code = "database_unavailable"
    message = "Database not configured"


class PaymentProviderError(ApiError):
    status_code = 502
    code = "payment_provider_error"
    message = "Payment provider error"
