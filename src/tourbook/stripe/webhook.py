"""Stripe webhook signature validation and payload parsing.

Purpose:
- Validate webhook signature using Stripe-Signature header.
- Extract the ids needed to reconcile payments and refunds (no full event).
- Never log payload or signature.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import stripe

from tourbook.observability.logging import get_logger

logger = get_logger(__name__)


class InvalidSignatureError(Exception):
    """Webhook signature validation failed."""


class InvalidPayloadError(Exception):
    """Payload structure is invalid or missing required fields."""


@dataclass
class StripeWebhookEvent:
    """Minimal extracted data from a Stripe webhook event."""

    event_id: str
    event_type: str
    object_id: str | None
    payment_intent_id: str | None = None
    refunds: list[tuple[str, str]] = field(default_factory=list)

    def to_task_payload(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "object_id": self.object_id,
            "payment_intent_id": self.payment_intent_id,
            "refunds": [{"id": rid, "status": status} for rid, status in self.refunds],
        }


def verify_and_extract(
    payload_bytes: bytes,
    signature_header: str,
    webhook_secret: str,
) -> StripeWebhookEvent:
    """Validate Stripe webhook signature and extract minimal event data.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: Value of Stripe-Signature header.
        webhook_secret: Webhook endpoint secret from Stripe.

    Raises:
        InvalidSignatureError: If signature validation fails.
        InvalidPayloadError: If event structure is invalid.
    """
    try:
        payload = payload_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidPayloadError("Invalid payload") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature") from e

    # Read as plain dicts, never as StripeObject
    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.warning("stripe webhook payload parsing failed")
        raise InvalidPayloadError("Invalid payload") from e
    if not isinstance(event, dict):
        raise InvalidPayloadError("Event is not an object")

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}

    return StripeWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        object_id=obj.get("id"),
        payment_intent_id=_extract_payment_intent_id(obj),
        refunds=_extract_refunds(obj),
    )


def _extract_payment_intent_id(obj: dict[str, Any]) -> str | None:
    """PaymentIntent id for payment_intent.*, charge.* and refund objects."""
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


def _extract_refunds(obj: dict[str, Any]) -> list[tuple[str, str]]:
    """(refund id, status) pairs from a refund object or a charge's refund list."""
    if obj.get("object") == "refund":
        return [(obj["id"], obj.get("status") or "")] if obj.get("id") else []

    refunds = obj.get("refunds") or {}
    items = (refunds.get("data") or []) if isinstance(refunds, dict) else refunds
    return [
        (r["id"], r.get("status") or "") for r in items if isinstance(r, dict) and r.get("id")
    ]
