"""Stripe webhook receiver (public).

Only receipt happens here: verify Stripe-Signature, record the event id in
processed_events, dispatch /tasks/stripe/handle-event. Payloads and the
signature header are never logged. Any failure after verification answers
5xx so Stripe redelivers.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Header, Request, Response

from tourbook.api.routes.tasks_stripe import handle_stripe_event
from tourbook.observability.correlation import get_correlation_id
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.stripe.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    StripeWebhookEvent,
    verify_and_extract,
)
from tourbook.tasks.client import TasksClient

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

HANDLE_EVENT_PATH = "/tasks/stripe/handle-event"

_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Module tasks client (patched in tests)."""
    return _tasks_client


def _get_webhook_secret() -> str:
    secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
    return secret


def _receive(event: StripeWebhookEvent, correlation_id: str | None) -> str:
    """Record the receipt and dispatch the handler task in one transaction.

    Returns "duplicate" for an event id already recorded, "ok" otherwise.
    A dispatch failure raises and rolls the receipt back.
    """
    from tourbook.infra.db import txn

    with txn() as cur:
        cur.execute(
            """
            INSERT INTO processed_events (source, external_id)
            VALUES ('stripe', %s)
            ON CONFLICT (source, external_id) DO NOTHING
            """,
            (event.event_id,),
        )
        if cur.rowcount == 0:
            return "duplicate"

        dispatched = _get_tasks_client().dispatch(
            task_id=f"stripe:{event.event_id}",
            url_path=HANDLE_EVENT_PATH,
            handler=handle_stripe_event,
            payload={**event.to_task_payload(), "correlation_id": correlation_id},
            correlation_id=correlation_id,
        )
        if not dispatched:
            raise RuntimeError(f"dispatch returned false for stripe:{event.event_id}")
    return "ok"


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
) -> Response:
    """Acknowledge a Stripe event once it is verified, recorded and dispatched.

    Returns:
        200 "ok" or "duplicate"; 400 for a bad signature or payload;
        500 when the secret is missing or dispatch fails.
    """
    correlation_id = get_correlation_id()
    log_ctx = safe_log_context(correlationId=correlation_id)
    payload_bytes = await request.body()

    try:
        secret = _get_webhook_secret()
    except RuntimeError:
        logger.error("webhook secret not configured", extra={"extra_fields": log_ctx})
        return Response(status_code=500, content="server configuration error")

    try:
        event = verify_and_extract(payload_bytes, stripe_signature, secret)
    except InvalidSignatureError:
        logger.warning("stripe signature rejected", extra={"extra_fields": log_ctx})
        return Response(status_code=400, content="invalid signature")
    except InvalidPayloadError:
        logger.warning("stripe payload rejected", extra={"extra_fields": log_ctx})
        return Response(status_code=400, content="invalid payload")

    event_ctx = {
        **log_ctx,
        **safe_log_context(event_id_prefix=event.event_id[:8], event_type=event.event_type),
    }

    try:
        outcome = _receive(event, correlation_id)
    except Exception:
        logger.exception("stripe webhook dispatch failed", extra={"extra_fields": event_ctx})
        return Response(status_code=500, content="processing failed")

    logger.info(
        "stripe webhook received",
        extra={"extra_fields": {**event_ctx, "outcome": outcome}},
    )
    return Response(status_code=200, content=outcome)
