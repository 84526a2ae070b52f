"""Exception hierarchy shared by the boarding core and the web layer."""

from __future__ import annotations


class BoardingError(RuntimeError):
    """Base class for errors that map onto an API error response."""

    code = "INTERNAL_ERROR"
    status = 500


class ValidationError(BoardingError):
    """Raised when incoming data fails validation."""

    code = "VALIDATION_ERROR"
    status = 400


class AuthenticationError(BoardingError):
    """Raised when a token is missing, invalid or revoked."""

    code = "AUTHENTICATION_ERROR"
    status = 401


class AuthorizationError(BoardingError):
    """Raised when a user action is not permitted."""

    code = "AUTHORIZATION_ERROR"
    status = 403


class NotFound(BoardingError):
    code = "NOT_FOUND"
    status = 404


class DuplicateError(BoardingError):
    code = "DUPLICATE_ERROR"
    status = 409


class CapacityExceeded(BoardingError):
    """Raised when a reservation does not fit on one of the requested dates."""

    code = "CAPACITY_EXCEEDED"
    status = 409

    def __init__(self, message: str, *, date: str | None = None, pet_type: str | None = None) -> None:
        super().__init__(message)
        self.date = date
        self.pet_type = pet_type


class InvalidTransition(BoardingError):
    code = "INVALID_TRANSITION"
    status = 409


class InvalidRefundAmount(BoardingError):
    code = "INVALID_REFUND_AMOUNT"
    status = 400


class PaymentProviderError(BoardingError):
    """Raised when the payment provider is unreachable or rejects a call."""

    code = "PAYMENT_ERROR"
    status = 502


class InternalError(BoardingError):
    code = "INTERNAL_ERROR"
    status = 500
