"""
Domain-specific exceptions for the ParcelBook client.

These are raised by the booking controller and the payment engine for
conditions the UI layer must present to the user. Transport and backend
failures live in ``client.BackendError`` and its subclasses.
"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DomainException):
    """Raised when local validation fails, before any network call."""


class InvalidFareError(ValidationError):
    """Raised when a fare is missing or not a positive amount."""


class NotFoundError(DomainException):
    """Raised when a booking cannot be found by id or tracking number."""


class AmbiguousOutcomeError(DomainException):
    """Raised when a payment's outcome could not be determined in time."""

    def __init__(
        self,
        transaction_id: str,
        attempts: int,
        message: str = "Payment status unknown. Please check your bookings later.",
    ) -> None:
        super().__init__(
            message,
            details={"transaction_id": transaction_id, "attempts": attempts},
        )
        self.transaction_id = transaction_id
        self.attempts = attempts


class PaymentLaunchError(DomainException):
    """Raised when the external payment page could not be opened."""
