"""Tests for schedule and pickup resolution."""

from __future__ import annotations

from datetime import date, time

import pytest

from helpers import utc
from tourbook.domain.edit_data import EditBookingData
from tourbook.domain.errors import PickupNotFound, ScheduleNotFound
from tourbook.domain.schedules import (
    current_service_time,
    is_tour_date_available,
    parse_tour_date,
    resolve_schedule,
)


def _event() -> dict:
    return {
        "id": "e-1",
        "name": "Sunset Cruise",
        "currency": "usd",
        "min_guests": 1,
        "max_guests": 10,
        "schedules": [
            {
                "id": "s-1",
                "event_date_time": utc(2026, 11, 1, 18, 0),
                "pickups": [
                    {
                        "id": "p-1",
                        "name": "Harbour",
                        "adult_price_cents": 5000,
                        "children_price_cents": 2500,
                        "pickup_times": [{"id": "pt-1", "pickup_at": utc(2026, 11, 1, 17, 0)}],
                    },
                    {
                        "id": "p-2",
                        "name": "Marina",
                        "adult_price_cents": 4000,
                        "children_price_cents": 2000,
                        "pickup_times": [],
                    },
                ],
            }
        ],
    }


def _tour() -> dict:
    return {
        "id": "t-1",
        "name": "Jungle Tour",
        "currency": "USD",
        "min_guests": 1,
        "max_guests": None,
        "start_time": time(9, 0),
        "weekdays": [0, 2, 4],  # Mon, Wed, Fri
        "booking_window_days": 60,
        "blackout_dates": [date(2026, 11, 6)],
        "pickups": [
            {
                "hotel_id": "42",
                "name": "Grand Hotel",
                "adult_price_cents": 8000,
                "children_price_cents": 4000,
                "pickup_time": time(8, 15),
            }
        ],
    }


def _event_edit(**overrides) -> EditBookingData:
    values = dict(
        booking_type="event",
        parent_id="e-1",
        schedule_id="s-1",
        adult_count=2,
        child_count=0,
        pickup_location_id="p-1",
        pickup_time_id="pt-1",
    )
    values.update(overrides)
    return EditBookingData(**values)


def _tour_edit(**overrides) -> EditBookingData:
    values = dict(
        booking_type="tour",
        parent_id="t-1",
        schedule_id="2026-11-02",
        adult_count=2,
        child_count=1,
        pickup_location_id="42",
    )
    values.update(overrides)
    return EditBookingData(**values)


class TestResolveEvent:
    def test_resolves_prices_and_times(self):
        resolved = resolve_schedule(_event_edit(), _event())

        assert resolved.schedule_id == "s-1"
        assert resolved.adult_price_cents == 5000
        assert resolved.children_price_cents == 2500
        assert resolved.service_at == utc(2026, 11, 1, 18, 0)
        assert resolved.pickup_at == utc(2026, 11, 1, 17, 0)
        assert resolved.departure_at == resolved.pickup_at
        assert resolved.currency == "USD"

    def test_pickup_without_times(self):
        resolved = resolve_schedule(_event_edit(pickup_location_id="p-2", pickup_time_id=None), _event())

        assert resolved.pickup_at is None
        assert resolved.departure_at == resolved.service_at

    def test_missing_event(self):
        with pytest.raises(ScheduleNotFound, match="Event not found"):
            resolve_schedule(_event_edit(), None)

    def test_unknown_schedule(self):
        with pytest.raises(ScheduleNotFound):
            resolve_schedule(_event_edit(schedule_id="s-9"), _event())

    def test_unknown_pickup(self):
        with pytest.raises(PickupNotFound):
            resolve_schedule(_event_edit(pickup_location_id="p-9"), _event())

    def test_unknown_pickup_time(self):
        with pytest.raises(PickupNotFound, match="Pickup time not found"):
            resolve_schedule(_event_edit(pickup_time_id="pt-9"), _event())

    def test_pickup_time_required_when_offered(self):
        with pytest.raises(PickupNotFound, match="must be selected"):
            resolve_schedule(_event_edit(pickup_time_id=None), _event())


class TestResolveTour:
    def test_resolves_by_hotel(self):
        resolved = resolve_schedule(_tour_edit(), _tour(), today=date(2026, 10, 20))

        assert resolved.schedule_id == "2026-11-02"
        assert resolved.service_at == utc(2026, 11, 2, 9, 0)
        assert resolved.pickup_at == utc(2026, 11, 2, 8, 15)
        assert resolved.adult_price_cents == 8000
        assert resolved.pickup_location_name == "Grand Hotel"

    def test_hotel_id_overrides_pickup_location(self):
        edit = _tour_edit(pickup_location_id="ignored", hotel_id="42")
        resolved = resolve_schedule(edit, _tour(), today=date(2026, 10, 20))
        assert resolved.pickup_location_id == "42"

    def test_weekday_not_offered(self):
        # 2026-11-03 is a Tuesday
        with pytest.raises(ScheduleNotFound, match="not available"):
            resolve_schedule(_tour_edit(schedule_id="2026-11-03"), _tour(), today=date(2026, 10, 20))

    def test_unknown_hotel(self):
        with pytest.raises(PickupNotFound):
            resolve_schedule(_tour_edit(pickup_location_id="7"), _tour(), today=date(2026, 10, 20))


class TestTourDates:
    def test_parse_date_and_datetime(self):
        assert parse_tour_date("2026-11-02") == date(2026, 11, 2)
        assert parse_tour_date("2026-11-02T09:00:00Z") == date(2026, 11, 2)

    def test_parse_invalid(self):
        with pytest.raises(ScheduleNotFound):
            parse_tour_date("next monday")

    def test_blackout(self):
        # 2026-11-06 is a Friday but blacked out
        assert is_tour_date_available(_tour(), date(2026, 11, 6), date(2026, 10, 20)) is False

    def test_outside_booking_window(self):
        assert is_tour_date_available(_tour(), date(2027, 1, 4), date(2026, 10, 20)) is False

    def test_empty_weekdays_means_every_day(self):
        tour = {**_tour(), "weekdays": []}
        assert is_tour_date_available(tour, date(2026, 11, 3), date(2026, 10, 20)) is True


class TestCurrentServiceTime:
    def test_event_uses_booked_schedule(self):
        booking = {"schedule_id": "s-1"}
        assert current_service_time("event", booking, _event()) == utc(2026, 11, 1, 18, 0)

    def test_event_schedule_gone(self):
        with pytest.raises(ScheduleNotFound):
            current_service_time("event", {"schedule_id": "s-9"}, _event())

    def test_tour_datetime(self):
        booking = {"scheduled_date": utc(2026, 11, 2, 9, 0)}
        assert current_service_time("tour", booking, _tour()) == utc(2026, 11, 2, 9, 0)

    def test_tour_date_uses_start_time(self):
        booking = {"scheduled_date": date(2026, 11, 2)}
        assert current_service_time("tour", booking, _tour()) == utc(2026, 11, 2, 9, 0)

    def test_tour_without_date(self):
        with pytest.raises(ScheduleNotFound):
            current_service_time("tour", {"scheduled_date": None}, _tour())
