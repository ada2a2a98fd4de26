"""Review follow-up rescheduling with Shopper Approved.

When a booking moves to a new date, the review request already scheduled
for it is moved to follow the new service time. A cancelled booking has its
review request cancelled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import requests

from tourbook.domain.errors import NotificationError
from tourbook.events.booking_events import CHANGE_CANCELLED, BookingUpdated
from tourbook.infra.repositories import bookings_repository
from tourbook.infra.time import ensure_utc
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

HTTP_TIMEOUT = 10


@dataclass(frozen=True)
class ReviewUpdateResult:
    success: bool
    status: int | None = None
    error: str | None = None


def _env_hours() -> float | None:
    raw = os.environ.get("SHOPPER_FOLLOWUP_SCHEDULE_HOURS")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def compute_followup_date(service_at: datetime, hours_offset: float | None = None) -> date:
    """Follow-up date for a service time (UTC).

    A positive hours_offset (or SHOPPER_FOLLOWUP_SCHEDULE_HOURS) schedules
    the follow-up that many hours after the service; otherwise it is the
    next UTC calendar day.
    """
    service_at = ensure_utc(service_at)
    hours = hours_offset if hours_offset and hours_offset > 0 else _env_hours()
    if hours and hours > 0:
        return (service_at + timedelta(hours=hours)).date()
    return service_at.date() + timedelta(days=1)


def update_review_followup(
    review_id: str,
    *,
    followup: date | None = None,
    cancel: bool = False,
) -> ReviewUpdateResult:
    """PUT a follow-up change for an existing review request.

    Never raises: transport and credential problems come back as a failed
    result.
    """
    site_id = os.environ.get("SHOPPER_APPROVED_SITE_ID")
    token = os.environ.get("SHOPPER_API_TOKEN")
    if not site_id or not token:
        return ReviewUpdateResult(success=False, error="Missing Shopper Approved credentials")

    base_url = os.environ.get("SHOPPER_APPROVED_BASE_URL", "").rstrip("/")
    url = f"{base_url}/reviews/{quote(site_id, safe='')}/{quote(review_id, safe='')}"

    form: dict[str, str] = {"token": token}
    if cancel:
        form["cancel"] = "1"
    if followup is not None:
        form["followup"] = followup.isoformat()

    try:
        resp = requests.put(
            url,
            params={"xml": "false"},
            data=form,
            headers={"Accept": "*/*"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as e:
        return ReviewUpdateResult(success=False, error=type(e).__name__)

    if 200 <= resp.status_code < 300:
        return ReviewUpdateResult(success=True, status=resp.status_code)
    return ReviewUpdateResult(
        success=False,
        status=resp.status_code,
        error=f"HTTP {resp.status_code}",
    )


def _cancel_review_followup(event: BookingUpdated, review_id: str) -> bool:
    result = update_review_followup(review_id, cancel=True)
    if not result.success:
        raise NotificationError(f"review follow-up cancel failed: {result.error}")
    logger.info(
        "review follow-up cancelled",
        extra={
            "extra_fields": safe_log_context(booking_id=event.booking_id, review_id=review_id)
        },
    )
    return True


def reschedule_review_followup(event: BookingUpdated, context: dict[str, Any]) -> bool:
    """Move the booking's review follow-up to follow its new service time.

    For a cancellation the follow-up is cancelled instead.

    Returns:
        True if rescheduled or cancelled, False if the booking has no
        follow-up to move.

    Raises:
        NotificationError: Shopper Approved rejected the update.
    """
    from tourbook.infra.db import txn

    booking = context["booking"]
    review_id = (booking.get("review_followup") or {}).get("review_id")
    if review_id and event.change_type == CHANGE_CANCELLED:
        return _cancel_review_followup(event, str(review_id))

    service_time = (booking.get("pickup_details") or {}).get("service_time")
    if not review_id or not service_time:
        return False

    followup = compute_followup_date(datetime.fromisoformat(service_time))
    result = update_review_followup(str(review_id), followup=followup)
    if not result.success:
        raise NotificationError(f"review follow-up update failed: {result.error}")

    with txn() as cur:
        bookings_repository.set_review_followup(
            cur,
            event.booking_type,
            event.booking_id,
            followup_date=followup.isoformat(),
        )

    logger.info(
        "review follow-up rescheduled",
        extra={
            "extra_fields": safe_log_context(
                booking_id=event.booking_id,
                review_id=str(review_id),
            )
        },
    )
    return True
