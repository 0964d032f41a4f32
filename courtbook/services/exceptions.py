"""
Typed errors raised by the booking and payment services.

Routes convert these with ``to_http_exception()``; the webhook reconciler
inspects them to decide whether a delivery should be acknowledged.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BookingError(Exception):
    """Base class for all domain errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_http_exception(self) -> HTTPException:
        detail: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            detail["details"] = self.details
        return HTTPException(status_code=self.status_code, detail=detail)


class ValidationError(BookingError, ValueError):
    """Bad input: missing field, bad slot, team size, etc."""

    status_code = status.HTTP_400_BAD_REQUEST


class SlotUnavailableError(ValidationError):
    """A requested slot is already held by a confirmed booking."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, slots, message: Optional[str] = None):
        slots = sorted(slots)
        super().__init__(
            message or f"Slot(s) already booked: {', '.join(slots)}",
            details={"slots": slots},
        )
        self.slots = slots


class InsufficientCreditError(ValidationError):
    """The user's available credit cannot cover the requested reservation."""


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class AuthenticationError(BookingError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ConflictError(BookingError):
    """A concurrent writer already changed the same state."""

    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(ConflictError):
    """A transaction status change not allowed from its current state."""


class PaymentNotApplicableError(ConflictError):
    """A successful payment that can no longer be applied to its bookings."""

    reason_code = "not_applicable"


class BookingCancelledError(PaymentNotApplicableError):
    reason_code = "booking_cancelled"

    def __init__(self, booking_id: int):
        super().__init__(
            f"Booking {booking_id} was cancelled", details={"booking_id": booking_id}
        )
        self.booking_id = booking_id


class DuplicatePaymentError(PaymentNotApplicableError):
    reason_code = "duplicate_payment"

    def __init__(self, booking_id: int):
        super().__init__(
            f"Booking {booking_id} is already paid by another transaction",
            details={"booking_id": booking_id},
        )
        self.booking_id = booking_id


class SeatTakenError(PaymentNotApplicableError):
    """The roster seat a join payment was for went to another player."""

    reason_code = "seat_taken"


class CreditShortfallError(PaymentNotApplicableError):
    """The held credit is no longer covered by the balance."""

    reason_code = "credit_shortfall"


class InternalError(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class GatewayError(InternalError):
    """The external payment gateway rejected or failed a request."""

    status_code = status.HTTP_502_BAD_GATEWAY
