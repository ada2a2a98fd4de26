"""Booking update and cancellation email via SendGrid v3 dynamic templates.

Security: NEVER log the recipient address or template data. Only log
hashes, booking ids and status codes.
"""

from __future__ import annotations

import hashlib
import os
import time
from typing import Any

import requests

from tourbook.domain.errors import NotificationError
from tourbook.domain.refund_selection import format_cents
from tourbook.events.booking_events import (
    CHANGE_CANCELLED,
    CHANGE_WITH_REFUND,
    CHANGE_WITH_UPCHARGE,
    BookingUpdated,
)
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

# Timeout for HTTP requests (seconds)
HTTP_TIMEOUT = 5

# Retry config
MAX_RETRIES = 1
RETRY_DELAY = 0.2


def _hash_identifier(value: str) -> str:
    """Create non-reversible hash for logging. Returns first 12 chars of sha256."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _get_config(booking_type: str) -> dict[str, str] | None:
    """SendGrid settings for a booking type, or None when not configured."""
    api_key = os.environ.get("SENDGRID_API_KEY", "")
    from_address = os.environ.get("EMAIL_FROM_ADDRESS", "")
    template_id = os.environ.get(f"EMAIL_TEMPLATE_BOOKING_UPDATED_{booking_type.upper()}", "")
    if not api_key or not from_address or not template_id:
        return None
    return {"api_key": api_key, "from_address": from_address, "template_id": template_id}


def _messages(event: BookingUpdated) -> tuple[str, str]:
    if event.change_type == CHANGE_CANCELLED:
        return (
            "Your booking has been cancelled.",
            f"A refund of {format_cents(event.refund_amount_cents)} has been initiated "
            "and will appear in your account within 5-10 business days.",
        )
    if event.change_type == CHANGE_WITH_UPCHARGE and event.upcharge_amount_cents:
        return (
            "Your booking has been updated and additional payment has been processed.",
            f"Additional payment of {format_cents(event.upcharge_amount_cents)} "
            "was charged for the booking changes.",
        )
    if event.change_type == CHANGE_WITH_REFUND and event.refund_amount_cents:
        return (
            "Your booking has been updated and a refund has been initiated.",
            f"A refund of {format_cents(event.refund_amount_cents)} has been initiated "
            "and will appear in your account within 5-10 business days.",
        )
    return "Your booking has been updated successfully.", ""


def build_template_data(event: BookingUpdated, context: dict[str, Any]) -> dict[str, Any]:
    """Dynamic template data for the booking-updated email."""
    booking = context["booking"]
    user = context.get("user") or {}
    parent = context.get("parent") or {}
    pickup = booking.get("pickup_details") or {}
    pricing = booking.get("pricing") or {}
    update_message, payment_message = _messages(event)
    cancelled = event.change_type == CHANGE_CANCELLED

    return {
        "customerName": user.get("name") or user.get("email") or "",
        "bookingReference": booking.get("booking_reference") or "",
        "bookingType": event.booking_type,
        "serviceName": parent.get("name") or event.booking_type.title(),
        "serviceDateTime": pickup.get("service_time") or "",
        "pickupLocation": pickup.get("pickup_location_name") or "To be confirmed",
        "pickupTime": pickup.get("pickup_time") or "",
        "numberOfAttendees": str(
            int(booking.get("adult_count") or 0) + int(booking.get("child_count") or 0)
        ),
        "paymentSummary": f"Total: {format_cents(int(pricing.get('total_amount_cents') or 0))} "
        f"{pricing.get('currency') or ''}".rstrip(),
        "isUpdate": not cancelled,
        "updateMessage": update_message,
        "paymentMessage": payment_message,
        "headerTitle": "Booking Cancelled" if cancelled else "Booking Updated",
    }


def send_booking_update_email(event: BookingUpdated, context: dict[str, Any]) -> bool:
    """Send the booking-updated email to the booking owner.

    Returns:
        True if sent, False if skipped (not configured or no address).

    Raises:
        NotificationError: SendGrid rejected the request or was unreachable
            after retry.
    """
    config = _get_config(event.booking_type)
    if config is None:
        logger.info(
            "email not configured, skipping booking update email",
            extra={"extra_fields": safe_log_context(booking_id=event.booking_id)},
        )
        return False

    email = (context.get("user") or {}).get("email")
    if not email:
        logger.warning(
            "booking owner has no email, skipping",
            extra={"extra_fields": safe_log_context(booking_id=event.booking_id)},
        )
        return False

    body = {
        "personalizations": [
            {
                "to": [{"email": email}],
                "dynamic_template_data": build_template_data(event, context),
            }
        ],
        "from": {"email": config["from_address"]},
        "template_id": config["template_id"],
        "custom_args": {
            "bookingId": event.booking_id,
            "changeType": event.change_type,
        },
    }
    headers = {"Authorization": f"Bearer {config['api_key']}"}
    log_ctx = safe_log_context(
        booking_id=event.booking_id,
        change_type=event.change_type,
        to_hash=_hash_identifier(email),
    )

    for attempt in range(MAX_RETRIES + 1):
        try:
            resp = requests.post(SENDGRID_SEND_URL, json=body, headers=headers, timeout=HTTP_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException as e:
            status = e.response.status_code if e.response is not None else None
            retryable = status is None or status >= 500
            if attempt < MAX_RETRIES and retryable:
                logger.warning(
                    "booking update email failed, retrying",
                    extra={"extra_fields": {**log_ctx, "attempt": attempt, "status": status}},
                )
                time.sleep(RETRY_DELAY)
                continue
            raise NotificationError(f"SendGrid send failed (status={status})") from e

        logger.info(
            "booking update email sent",
            extra={"extra_fields": {**log_ctx, "attempt": attempt}},
        )
        return True

    return False
