"""Thin wrapper around Stripe SDK.

Purpose:
- Encapsulate Stripe API calls so domain code doesn't import stripe.* directly.
- Accept idempotency_key on every mutating call for safe retries.
- Never log full Stripe payloads or client secrets (only IDs + amounts).
"""

from __future__ import annotations

import os
from typing import Any

import stripe

from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)


class StripeClientError(Exception):
    """A Stripe API call failed (network, card, or API error)."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class StripeClient:
    """Wrapper for the customer, PaymentIntent and refund calls booking edits need.

    Usage:
        client = StripeClient()  # reads STRIPE_SECRET_KEY from env
        intent = client.create_payment_intent(
            amount_cents=5000,
            currency="usd",
            customer_id="cus_123",
            metadata={"bookingId": "..."},
            idempotency_key="upcharge:event:<booking>:<version>:5000",
        )
        print(intent["id"], intent["client_secret"])
    """

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY env var.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )

    def _client(self) -> stripe.StripeClient:
        return stripe.StripeClient(self._api_key)

    @staticmethod
    def _wrap(action: str, exc: stripe.StripeError) -> StripeClientError:
        logger.warning(
            "stripe call failed",
            extra={
                "extra_fields": safe_log_context(
                    action=action,
                    error_type=type(exc).__name__,
                    code=getattr(exc, "code", None),
                )
            },
        )
        return StripeClientError(
            getattr(exc, "user_message", None) or "Stripe request failed",
            code=getattr(exc, "code", None),
        )

    def create_customer(
        self,
        *,
        email: str | None,
        name: str | None,
        user_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Create a Stripe customer for a user.

        Returns:
            Dict with id.
        """
        params: dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name

        try:
            customer = self._client().v1.customers.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise self._wrap("create_customer", e) from e

        logger.info(
            "stripe customer created",
            extra={"extra_fields": safe_log_context(customer_id=customer.id, user_id=user_id)},
        )
        return {"id": customer.id}

    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create a PaymentIntent with automatic payment methods.

        Returns:
            Dict with id, client_secret, status, amount.
        """
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": customer_id,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description

        try:
            intent = self._client().v1.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise self._wrap("create_payment_intent", e) from e

        logger.info(
            "stripe payment intent created",
            extra={
                "extra_fields": safe_log_context(
                    payment_intent_id=intent.id,
                    amount_cents=amount_cents,
                )
            },
        )
        return {
            "id": intent.id,
            "client_secret": intent.client_secret,
            "status": intent.status,
            "amount": intent.amount,
        }

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """Fetch a PaymentIntent's current status.

        Returns:
            Dict with id, status, amount, metadata.
        """
        try:
            intent = self._client().v1.payment_intents.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise self._wrap("retrieve_payment_intent", e) from e

        return {
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "metadata": dict(intent.metadata or {}),
        }

    def cancel_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """Cancel a PaymentIntent that will never be used."""
        try:
            intent = self._client().v1.payment_intents.cancel(payment_intent_id)
        except stripe.StripeError as e:
            raise self._wrap("cancel_payment_intent", e) from e

        logger.info(
            "stripe payment intent cancelled",
            extra={"extra_fields": safe_log_context(payment_intent_id=intent.id)},
        )
        return {"id": intent.id, "status": intent.status}

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Refund part or all of a PaymentIntent.

        Returns:
            Dict with id, status (succeeded, pending, failed, canceled), amount.
        """
        try:
            refund = self._client().v1.refunds.create(
                params={
                    "payment_intent": payment_intent_id,
                    "amount": amount_cents,
                    "reason": "requested_by_customer",
                    "metadata": metadata,
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise self._wrap("create_refund", e) from e

        logger.info(
            "stripe refund created",
            extra={
                "extra_fields": safe_log_context(
                    refund_id=refund.id,
                    payment_intent_id=payment_intent_id,
                    amount_cents=amount_cents,
                    status=refund.status,
                )
            },
        )
        return {"id": refund.id, "status": refund.status, "amount": refund.amount}
