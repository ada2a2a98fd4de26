"""Schedule and pickup pricing resolution.

Given a catalog entry (event or tour) and the requested schedule and pickup,
returns the service time, pickup time and per-guest prices the change will be
charged at. Pure functions over catalog dicts loaded by catalog_repository.

Event catalog shape:
    {"id", "name", "currency", "min_guests", "max_guests",
     "schedules": [{"id", "event_date_time",
                    "pickups": [{"id", "name", "adult_price_cents", "children_price_cents",
                                 "pickup_times": [{"id", "pickup_at"}]}]}]}

Tour catalog shape:
    {"id", "name", "currency", "min_guests", "max_guests", "start_time",
     "weekdays", "booking_window_days", "blackout_dates",
     "pickups": [{"hotel_id", "name", "adult_price_cents", "children_price_cents",
                  "pickup_time"}]}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from tourbook.domain.edit_data import BookingType, EditBookingData
from tourbook.domain.errors import PickupNotFound, ScheduleNotFound
from tourbook.infra.time import ensure_utc, utc_now


@dataclass(frozen=True)
class ResolvedSchedule:
    """Prices and times for one schedule + pickup combination."""

    schedule_id: str
    service_at: datetime
    adult_price_cents: int
    children_price_cents: int
    pickup_location_id: str
    pickup_location_name: str | None
    pickup_at: datetime | None
    currency: str
    min_guests: int = 1
    max_guests: int | None = None

    @property
    def departure_at(self) -> datetime:
        """Earliest moment the customer must be ready: pickup, else service start."""
        return self.pickup_at or self.service_at


def resolve_schedule(
    edit: EditBookingData,
    parent: dict[str, Any] | None,
    *,
    today: date | None = None,
    default_currency: str = "USD",
) -> ResolvedSchedule:
    """Resolve the requested schedule and pickup against the catalog.

    Args:
        edit: Requested change.
        parent: Event or tour catalog dict, or None if it no longer exists.
        today: Reference date for tour booking windows (defaults to UTC today).
        default_currency: Used when the catalog entry has no currency.

    Raises:
        ScheduleNotFound: Parent missing, schedule id unknown, or tour date unavailable.
        PickupNotFound: Pickup location (or pickup time) not offered on that schedule.
    """
    if parent is None:
        label = "Event" if edit.booking_type == "event" else "Tour"
        raise ScheduleNotFound(f"{label} not found")

    currency = (parent.get("currency") or default_currency).upper()
    if edit.booking_type == "event":
        return _resolve_event(edit, parent, currency)
    return _resolve_tour(edit, parent, currency, today or utc_now().date())


def _resolve_event(edit: EditBookingData, event: dict[str, Any], currency: str) -> ResolvedSchedule:
    schedule = _find_by_id(event.get("schedules", []), edit.schedule_id)
    if schedule is None:
        raise ScheduleNotFound()

    pickup = _find_by_id(schedule.get("pickups", []), edit.pickup_location_id)
    if pickup is None:
        raise PickupNotFound()

    pickup_at = None
    if edit.pickup_time_id:
        pickup_time = _find_by_id(pickup.get("pickup_times", []), edit.pickup_time_id)
        if pickup_time is None:
            raise PickupNotFound("Pickup time not found")
        pickup_at = ensure_utc(pickup_time["pickup_at"])
    elif pickup.get("pickup_times"):
        raise PickupNotFound("A pickup time must be selected")

    return ResolvedSchedule(
        schedule_id=str(schedule["id"]),
        service_at=ensure_utc(schedule["event_date_time"]),
        adult_price_cents=int(pickup["adult_price_cents"]),
        children_price_cents=int(pickup["children_price_cents"]),
        pickup_location_id=str(pickup["id"]),
        pickup_location_name=pickup.get("name"),
        pickup_at=pickup_at,
        currency=currency,
        min_guests=int(event.get("min_guests") or 1),
        max_guests=event.get("max_guests"),
    )


def _resolve_tour(
    edit: EditBookingData,
    tour: dict[str, Any],
    currency: str,
    today: date,
) -> ResolvedSchedule:
    tour_date = parse_tour_date(edit.schedule_id)
    if not is_tour_date_available(tour, tour_date, today):
        raise ScheduleNotFound("Selected date is not available for this tour")

    hotel_id = edit.hotel_id or edit.pickup_location_id
    pickup = next(
        (p for p in tour.get("pickups", []) if str(p.get("hotel_id")) == str(hotel_id)),
        None,
    )
    if pickup is None:
        raise PickupNotFound()

    pickup_time = pickup.get("pickup_time")
    pickup_at = _at(tour_date, pickup_time) if pickup_time is not None else None

    return ResolvedSchedule(
        schedule_id=tour_date.isoformat(),
        service_at=_at(tour_date, tour.get("start_time") or time(0, 0)),
        adult_price_cents=int(pickup["adult_price_cents"]),
        children_price_cents=int(pickup["children_price_cents"]),
        pickup_location_id=str(pickup["hotel_id"]),
        pickup_location_name=pickup.get("name"),
        pickup_at=pickup_at,
        currency=currency,
        min_guests=int(tour.get("min_guests") or 1),
        max_guests=tour.get("max_guests"),
    )


def parse_tour_date(value: str) -> date:
    """Parse a tour schedule id (YYYY-MM-DD, or an ISO datetime) into a date.

    Raises:
        ScheduleNotFound: If the value is not a date.
    """
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ScheduleNotFound("Invalid tour date") from None


def is_tour_date_available(tour: dict[str, Any], tour_date: date, today: date) -> bool:
    """Check a date against the tour's weekly recurrence, blackouts and booking window.

    Weekdays use date.weekday() numbering (Monday=0). An empty weekday list
    means the tour runs every day.
    """
    weekdays = tour.get("weekdays") or []
    if weekdays and tour_date.weekday() not in weekdays:
        return False

    if tour_date in set(tour.get("blackout_dates") or []):
        return False

    window_days = tour.get("booking_window_days")
    if window_days and tour_date > today + timedelta(days=int(window_days)):
        return False

    return True


def current_service_time(
    booking_type: BookingType,
    booking: dict[str, Any],
    parent: dict[str, Any] | None,
) -> datetime:
    """Service start of the booking as it is stored (before any edit).

    Raises:
        ScheduleNotFound: If the booked event schedule no longer exists or
            the tour booking has no date.
    """
    if booking_type == "tour":
        scheduled = booking.get("scheduled_date")
        if scheduled is None:
            raise ScheduleNotFound("Booking has no scheduled date")
        if isinstance(scheduled, datetime):
            return ensure_utc(scheduled)
        start = (parent or {}).get("start_time") or time(0, 0)
        return _at(scheduled, start)

    schedule = _find_by_id((parent or {}).get("schedules", []), booking.get("schedule_id"))
    if schedule is None:
        raise ScheduleNotFound()
    return ensure_utc(schedule["event_date_time"])


def _find_by_id(items: list[dict[str, Any]], item_id: Any) -> dict[str, Any] | None:
    if item_id is None:
        return None
    wanted = str(item_id)
    return next((item for item in items if str(item.get("id")) == wanted), None)


def _at(day: date, clock: time) -> datetime:
    return datetime.combine(day, clock.replace(tzinfo=None), tzinfo=timezone.utc)
