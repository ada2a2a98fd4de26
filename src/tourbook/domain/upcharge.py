"""Upcharge payments: collect a price increase through a Stripe PaymentIntent.

The PaymentIntent is created first and the pending Payment record second,
so a gateway failure leaves no payment row behind.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any

from tourbook.domain.edit_data import BookingType
from tourbook.domain.errors import GatewayError, InvalidUpchargeAmount, PersistenceError
from tourbook.infra.repositories import payments_repository, users_repository
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.stripe.client import StripeClient, StripeClientError

logger = get_logger(__name__)


@dataclass(frozen=True)
class UpchargeResult:
    client_secret: str
    payment_intent_id: str
    payment_id: str
    amount_cents: int


def generate_payment_reference() -> str:
    """Human-quotable payment reference, e.g. UPC-7F3A9C21."""
    return f"UPC-{secrets.token_hex(4).upper()}"


def create_or_get_stripe_customer(user: dict[str, Any], stripe_client: StripeClient) -> str:
    """Return the user's Stripe customer id, creating and linking one if needed.

    Idempotent per user: the Stripe call uses a per-user idempotency key
    and the link is only written when the user has none.

    Raises:
        GatewayError: Stripe customer creation failed.
    """
    existing = user.get("stripe_customer_id")
    if existing:
        return existing

    from tourbook.infra.db import txn

    try:
        customer = stripe_client.create_customer(
            email=user.get("email"),
            name=user.get("name"),
            user_id=user["id"],
            idempotency_key=f"customer:{user['id']}",
        )
    except StripeClientError as e:
        raise GatewayError("Could not set up payment for this account") from e

    with txn() as cur:
        stored = users_repository.set_stripe_customer_id(cur, user["id"], customer["id"])
    return stored


def process_upcharge_payment(
    *,
    booking_id: str,
    booking_reference: str | None,
    booking_type: BookingType,
    user: dict[str, Any],
    amount_cents: int,
    currency: str,
    metadata: dict[str, str],
    idempotency_key: str,
    stripe_client: StripeClient,
) -> UpchargeResult:
    """Create the upcharge PaymentIntent and its pending Payment record.

    Args:
        booking_id: Booking UUID.
        booking_reference: Booking reference shown to the customer.
        booking_type: "event" or "tour".
        user: Booking owner (charged account).
        amount_cents: Upcharge amount, must be positive.
        currency: ISO currency code.
        metadata: Extra PaymentIntent metadata (amounts, serialized edit).
        idempotency_key: Stripe idempotency key for the intent.
        stripe_client: Stripe wrapper.

    Raises:
        InvalidUpchargeAmount: amount_cents <= 0.
        GatewayError: Stripe failed; no Payment record was written.
        PersistenceError: Payment record insert failed; the intent was cancelled.
    """
    if amount_cents <= 0:
        raise InvalidUpchargeAmount()

    from tourbook.infra.db import txn

    customer_id = create_or_get_stripe_customer(user, stripe_client)

    intent_metadata = {
        "bookingId": booking_id,
        "bookingReference": booking_reference or "",
        "bookingType": booking_type,
        "userId": user["id"],
        "paymentType": "upcharge",
        "upchargeAmount": str(amount_cents),
        **metadata,
    }
    try:
        intent = stripe_client.create_payment_intent(
            amount_cents=amount_cents,
            currency=currency,
            customer_id=customer_id,
            metadata=intent_metadata,
            idempotency_key=idempotency_key,
            description=f"Booking change {booking_reference or booking_id}",
        )
    except StripeClientError as e:
        raise GatewayError() from e

    try:
        with txn() as cur:
            # A retried request gets the same intent back from Stripe
            existing = payments_repository.find_payment_by_intent(cur, intent["id"])
            if existing is not None:
                return UpchargeResult(
                    client_secret=intent["client_secret"],
                    payment_intent_id=intent["id"],
                    payment_id=existing[1]["id"],
                    amount_cents=amount_cents,
                )
            payment_id = payments_repository.insert_payment(
                cur,
                booking_type,
                booking_id=booking_id,
                user_id=user["id"],
                amount_cents=amount_cents,
                currency=currency,
                payment_type="upcharge",
                payment_reference=generate_payment_reference(),
                stripe_payment_intent_id=intent["id"],
                stripe_customer_id=customer_id,
                notes="Upcharge for booking change",
            )
    except Exception as e:
        logger.exception(
            "upcharge payment record failed, cancelling intent",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    payment_intent_id=intent["id"],
                )
            },
        )
        _cancel_orphan_intent(stripe_client, intent["id"])
        raise PersistenceError("Failed to record payment") from e

    logger.info(
        "upcharge payment created",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking_id,
                booking_type=booking_type,
                payment_id=payment_id,
                payment_intent_id=intent["id"],
                amount_cents=amount_cents,
            )
        },
    )
    return UpchargeResult(
        client_secret=intent["client_secret"],
        payment_intent_id=intent["id"],
        payment_id=payment_id,
        amount_cents=amount_cents,
    )


def _cancel_orphan_intent(stripe_client: StripeClient, payment_intent_id: str) -> None:
    try:
        stripe_client.cancel_payment_intent(payment_intent_id)
    except StripeClientError:
        logger.error(
            "orphan payment intent could not be cancelled",
            extra={"extra_fields": safe_log_context(payment_intent_id=payment_intent_id)},
        )
