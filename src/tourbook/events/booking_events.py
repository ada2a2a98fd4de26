"""Post-commit booking events.

BookingUpdated (an edit or a cancellation) is recorded in the outbox inside
the booking transaction and published after commit. Publishing never fails
the change: subscribers are best-effort and their failures are only logged.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.tasks.client import TasksClient

logger = get_logger(__name__)

CHANGE_DETAILS_UPDATED = "details_updated"
CHANGE_WITH_UPCHARGE = "details_updated_with_upcharge"
CHANGE_WITH_REFUND = "details_updated_with_refund"
CHANGE_CANCELLED = "cancelled"

BOOKING_UPDATED_TASK_PATH = "/tasks/notifications/booking-updated"

_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


@dataclass(frozen=True)
class BookingUpdated:
    """A booking edit or cancellation was committed."""

    booking_type: str
    booking_id: str
    change_type: str
    version: int
    outbox_event_id: int
    refund_amount_cents: int = 0
    upcharge_amount_cents: int = 0
    correlation_id: str | None = None

    @property
    def task_id(self) -> str:
        return f"booking-updated:{self.outbox_event_id}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BookingUpdated":
        return cls(
            booking_type=data["booking_type"],
            booking_id=str(data["booking_id"]),
            change_type=data["change_type"],
            version=int(data["version"]),
            outbox_event_id=int(data["outbox_event_id"]),
            refund_amount_cents=int(data.get("refund_amount_cents") or 0),
            upcharge_amount_cents=int(data.get("upcharge_amount_cents") or 0),
            correlation_id=data.get("correlation_id"),
        )


def change_type_for(difference_type: str) -> str:
    """Map a price difference type to the notification change type."""
    if difference_type == "upcharge":
        return CHANGE_WITH_UPCHARGE
    if difference_type == "refund":
        return CHANGE_WITH_REFUND
    return CHANGE_DETAILS_UPDATED


def publish_booking_updated(event: BookingUpdated) -> bool:
    """Hand the event to its subscribers.

    Returns:
        True if the event was dispatched, False if it was a duplicate or
        dispatch failed (logged, never raised).
    """
    from tourbook.notifications.dispatch import dispatch_booking_updated

    try:
        dispatched = _get_tasks_client().dispatch(
            task_id=event.task_id,
            url_path=BOOKING_UPDATED_TASK_PATH,
            handler=dispatch_booking_updated,
            payload=event.to_dict(),
            correlation_id=event.correlation_id,
        )
    except Exception:
        logger.exception(
            "booking updated event publish failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=event.booking_id,
                    booking_type=event.booking_type,
                    outbox_event_id=event.outbox_event_id,
                )
            },
        )
        return False

    logger.info(
        "booking updated event published",
        extra={
            "extra_fields": safe_log_context(
                booking_id=event.booking_id,
                change_type=event.change_type,
                outbox_event_id=event.outbox_event_id,
                dispatched=dispatched,
            )
        },
    )
    return dispatched
