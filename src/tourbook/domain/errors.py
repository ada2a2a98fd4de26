"""Booking-edit error taxonomy.

Every error carries the HTTP status it maps to and a message that is safe
to return to the customer. Routes never build error bodies themselves; the
app factory turns these into {"error": message} responses.
"""

from __future__ import annotations


class BookingEditError(Exception):
    """Base class for booking-edit failures."""

    status_code = 500
    default_message = "Error processing booking edit"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(BookingEditError):
    status_code = 401
    default_message = "Authentication required"


class AccessDenied(BookingEditError):
    status_code = 403
    default_message = "Access denied"


class BookingNotFound(BookingEditError):
    status_code = 404
    default_message = "Booking not found"


class UserNotFound(BookingEditError):
    status_code = 404
    default_message = "User not found"


class BookingNotEditable(BookingEditError):
    """Cancelled and completed bookings are immutable."""

    status_code = 400
    default_message = "This booking cannot be edited"


class InvalidPickupTime(BookingEditError):
    status_code = 400
    default_message = "The selected pickup time is no longer available"


class ScheduleNotFound(BookingEditError):
    status_code = 400
    default_message = "Schedule not found"


class PickupNotFound(BookingEditError):
    status_code = 400
    default_message = "Pickup location not found"


class InvalidGuestCount(BookingEditError):
    status_code = 400
    default_message = "Invalid number of guests"


class InsufficientRefundableFunds(BookingEditError):
    status_code = 400
    default_message = "No refundable payments found for this booking"


class RefundNotEligible(BookingEditError):
    status_code = 400
    default_message = (
        "This booking is not eligible for a refund based on our refund policy. "
        "The event may have already started or passed."
    )


class InvalidUpchargeAmount(BookingEditError):
    status_code = 400
    default_message = "Invalid upcharge amount"


class UpchargeRequired(BookingEditError):
    status_code = 400
    default_message = "Additional payment is required for this change"


class PendingEditInvalid(BookingEditError):
    status_code = 400
    default_message = "Pending edit is invalid or has expired"


class BookingLocked(BookingEditError):
    status_code = 409
    default_message = "This booking is already being modified"


class BookingConflict(BookingEditError):
    status_code = 409
    default_message = "Booking was modified concurrently, please retry"


class GatewayError(BookingEditError):
    status_code = 500
    default_message = "Payment processing failed"


class PersistenceError(BookingEditError):
    status_code = 500
    default_message = "Failed to update booking"


class NotificationError(Exception):
    """Raised by notifiers; logged by the dispatcher, never surfaced to callers."""
