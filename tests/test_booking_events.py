"""Tests for BookingUpdated publishing."""

from unittest.mock import MagicMock, patch

import pytest

from tourbook.events import booking_events
from tourbook.events.booking_events import (
    CHANGE_DETAILS_UPDATED,
    CHANGE_WITH_REFUND,
    CHANGE_WITH_UPCHARGE,
    BookingUpdated,
    change_type_for,
    publish_booking_updated,
)


def _event(**overrides) -> BookingUpdated:
    data = {
        "booking_type": "event",
        "booking_id": "b-1",
        "change_type": CHANGE_WITH_REFUND,
        "version": 4,
        "outbox_event_id": 17,
        "refund_amount_cents": 1250,
        "correlation_id": "cid-1",
    }
    data.update(overrides)
    return BookingUpdated(**data)


@pytest.fixture
def tasks_client():
    client = MagicMock()
    client.dispatch.return_value = True
    with patch.object(booking_events, "_get_tasks_client", return_value=client):
        yield client


@pytest.mark.parametrize(
    ("difference_type", "expected"),
    [
        ("upcharge", CHANGE_WITH_UPCHARGE),
        ("refund", CHANGE_WITH_REFUND),
        ("none", CHANGE_DETAILS_UPDATED),
    ],
)
def test_change_type_for(difference_type, expected):
    assert change_type_for(difference_type) == expected


def test_from_dict_coerces_types():
    event = BookingUpdated.from_dict(
        {
            "booking_type": "tour",
            "booking_id": 42,
            "change_type": CHANGE_DETAILS_UPDATED,
            "version": "5",
            "outbox_event_id": "9",
            "refund_amount_cents": None,
        }
    )

    assert event.booking_id == "42"
    assert event.version == 5
    assert event.outbox_event_id == 9
    assert event.refund_amount_cents == 0
    assert event.correlation_id is None


def test_dict_round_trip():
    event = _event()
    assert BookingUpdated.from_dict(event.to_dict()) == event


def test_publish_dispatches_by_outbox_id(tasks_client):
    assert publish_booking_updated(_event()) is True

    kwargs = tasks_client.dispatch.call_args.kwargs
    assert kwargs["task_id"] == "booking-updated:17"
    assert kwargs["url_path"] == "/tasks/notifications/booking-updated"
    assert kwargs["payload"]["refund_amount_cents"] == 1250
    assert kwargs["correlation_id"] == "cid-1"


def test_publish_failure_is_swallowed(tasks_client):
    tasks_client.dispatch.side_effect = RuntimeError("queue down")
    assert publish_booking_updated(_event()) is False


def test_duplicate_publish_returns_false(tasks_client):
    tasks_client.dispatch.return_value = False
    assert publish_booking_updated(_event()) is False
