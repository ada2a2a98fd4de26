"""Requested booking change, shared by preview, upcharge and apply."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

BookingType = Literal["event", "tour"]

# URL segment -> booking type
PATH_BOOKING_TYPES: dict[str, BookingType] = {"events": "event", "tours": "tour"}


def booking_type_from_path(segment: str) -> BookingType:
    """Map the /bookings/{type} path segment to a booking type.

    Raises:
        ValueError: If the segment is not events or tours.
    """
    try:
        return PATH_BOOKING_TYPES[segment]
    except KeyError:
        raise ValueError(f"unknown booking type segment: {segment}") from None


@dataclass(frozen=True)
class EditBookingData:
    """A requested change to schedule, pickup and guest counts.

    For events, schedule_id is the event schedule id and pickup_time_id
    selects one of the pickup's times. For tours, schedule_id is the tour
    date (YYYY-MM-DD) and pickup_location_id is the hotel id the pickup
    is keyed by.
    """

    booking_type: BookingType
    parent_id: str
    schedule_id: str
    adult_count: int
    child_count: int
    pickup_location_id: str
    pickup_time_id: str | None = None
    hotel_id: str | None = None

    @property
    def total_guests(self) -> int:
        return self.adult_count + self.child_count

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EditBookingData":
        return cls(
            booking_type=data["booking_type"],
            parent_id=str(data["parent_id"]),
            schedule_id=str(data["schedule_id"]),
            adult_count=int(data["adult_count"]),
            child_count=int(data["child_count"]),
            pickup_location_id=str(data["pickup_location_id"]),
            pickup_time_id=data.get("pickup_time_id"),
            hotel_id=data.get("hotel_id"),
        )
