"""Booking access checks and pickup-time validation for edits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tourbook.domain.edit_data import BookingType
from tourbook.domain.errors import (
    AccessDenied,
    BookingEditError,
    BookingNotEditable,
    BookingNotFound,
    InvalidPickupTime,
    UserNotFound,
)
from tourbook.domain.references import is_expanded, resolve_id
from tourbook.domain.schedules import ResolvedSchedule
from tourbook.infra.repositories import bookings_repository, users_repository
from tourbook.infra.time import hours_until, utc_now

IMMUTABLE_STATUSES = frozenset({"cancelled", "completed"})

_ERRORS_BY_STATUS: dict[int, type[BookingEditError]] = {
    403: AccessDenied,
    404: BookingNotFound,
    400: BookingNotEditable,
}


@dataclass
class BookingAccessResult:
    """Outcome of validate_booking_access.

    On success, booking is the loaded booking and user is its owner
    (the account any upcharge is charged to).
    """

    is_valid: bool
    booking: dict[str, Any] | None = None
    user: dict[str, Any] | None = None
    error: str | None = None
    status_code: int = 200

    def raise_for_error(self) -> None:
        """Raise the taxonomy error matching this result, if any."""
        if self.is_valid:
            return
        if self.error == UserNotFound.default_message:
            raise UserNotFound()
        error_cls = _ERRORS_BY_STATUS.get(self.status_code, BookingEditError)
        raise error_cls(self.error)


def _denied(error: str, status_code: int) -> BookingAccessResult:
    return BookingAccessResult(is_valid=False, error=error, status_code=status_code)


def validate_booking_access(
    booking_id: str,
    user_id: str,
    role: str,
    booking_type: BookingType,
) -> BookingAccessResult:
    """Check that the caller may edit the booking.

    Owner, creator (booked_by) and admins may edit. Cancelled and completed
    bookings are immutable for everyone, admins included.

    Args:
        booking_id: Booking UUID.
        user_id: Authenticated user's id.
        role: Authenticated user's role.
        booking_type: "event" or "tour".

    Returns:
        BookingAccessResult; never raises for access outcomes.
    """
    from tourbook.infra.db import txn

    with txn() as cur:
        booking = bookings_repository.get_booking(
            cur, booking_type, booking_id, expand_users=True
        )
        if booking is None:
            return _denied(BookingNotFound.default_message, 404)

        owner_id = resolve_id(booking.get("user"))
        creator_id = resolve_id(booking.get("booked_by"))

        if role != "admin" and user_id not in {owner_id, creator_id}:
            return _denied(AccessDenied.default_message, 403)

        if booking.get("status") in IMMUTABLE_STATUSES:
            return _denied(BookingNotEditable.default_message, 400)

        owner_ref = booking.get("user")
        if is_expanded(owner_ref):
            owner = dict(owner_ref)
        else:
            owner = users_repository.get_user(cur, owner_id or user_id)
        if owner is None:
            return _denied(UserNotFound.default_message, 404)

    return BookingAccessResult(is_valid=True, booking=booking, user=owner)


def validate_pickup_time(
    resolved: ResolvedSchedule,
    *,
    min_lead_hours: float,
    now: datetime | None = None,
) -> None:
    """Reject a pickup (or service start) that is past or too close.

    Raises:
        InvalidPickupTime: If fewer than min_lead_hours remain.
    """
    now = now or utc_now()
    remaining = hours_until(resolved.departure_at, now)
    if remaining <= 0:
        raise InvalidPickupTime("The selected pickup time has already passed")
    if remaining < min_lead_hours:
        raise InvalidPickupTime(
            f"Changes must be made at least {min_lead_hours:g} hours before pickup"
        )
