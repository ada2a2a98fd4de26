"""BookingUpdated subscribers.

Each subscriber gets the event plus a context loaded once from the
database. Subscribers run independently; one failing never stops the others
and never reaches the caller.
"""

from __future__ import annotations

from typing import Any, Callable

from tourbook.events.booking_events import BookingUpdated
from tourbook.infra.repositories import bookings_repository, catalog_repository, users_repository
from tourbook.notifications.email import send_booking_update_email
from tourbook.notifications.review_followup import reschedule_review_followup
from tourbook.observability.correlation import correlation_scope
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

Subscriber = Callable[[BookingUpdated, dict[str, Any]], Any]

SUBSCRIBERS: list[tuple[str, Subscriber]] = [
    ("email", send_booking_update_email),
    ("review_followup", reschedule_review_followup),
]


def load_context(event: BookingUpdated) -> dict[str, Any] | None:
    """Booking, owner and parent event/tour for an updated booking."""
    from tourbook.infra.db import txn

    with txn() as cur:
        booking = bookings_repository.get_booking(
            cur, event.booking_type, event.booking_id, expand_users=True
        )
        if booking is None:
            return None

        user = booking.get("user")
        if not isinstance(user, dict) and user is not None:
            user = users_repository.get_user(cur, user)
        parent = catalog_repository.get_parent(cur, event.booking_type, booking.get("parent_id"))

    return {"booking": booking, "user": user, "parent": parent}


def dispatch_booking_updated(payload: dict) -> dict[str, bool]:
    """Run every subscriber for one BookingUpdated payload.

    Returns:
        Subscriber name -> whether it completed without raising.
    """
    event = BookingUpdated.from_dict(payload)
    with correlation_scope(event.correlation_id):
        return _run_subscribers(event)


def _run_subscribers(event: BookingUpdated) -> dict[str, bool]:
    context = load_context(event)
    if context is None:
        logger.warning(
            "updated booking not found, skipping notifications",
            extra={"extra_fields": safe_log_context(booking_id=event.booking_id)},
        )
        return {}

    results: dict[str, bool] = {}
    for name, subscriber in SUBSCRIBERS:
        try:
            subscriber(event, context)
            results[name] = True
        except Exception as e:
            results[name] = False
            logger.error(
                "booking update notification failed",
                extra={
                    "extra_fields": safe_log_context(
                        subscriber=name,
                        booking_id=event.booking_id,
                        outbox_event_id=event.outbox_event_id,
                        error_type=type(e).__name__,
                    )
                },
            )
    return results
