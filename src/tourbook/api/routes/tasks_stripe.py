"""Worker routes for Stripe task handling.

Reconciles payments and refunds with what Stripe reports:
- payment_intent.succeeded: payment -> completed
- payment_intent.payment_failed: payment -> failed
- charge.refunded / charge.refund.updated / refund.updated: refund ledger
  and payment refund status
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response

from tourbook.api.task_auth import verify_task_auth
from tourbook.domain.refunds import update_refund_status
from tourbook.infra.repositories import payments_repository
from tourbook.observability.correlation import get_correlation_id
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/stripe", tags=["tasks"])

logger = get_logger(__name__)

PAYMENT_EVENTS = {
    "payment_intent.succeeded": "completed",
    "payment_intent.payment_failed": "failed",
}
REFUND_EVENTS = {"charge.refunded", "charge.refund.updated", "refund.updated"}


def _settle_payment(payment_intent_id: str, new_status: str, correlation_id: str | None) -> str:
    from tourbook.infra.db import txn

    with txn() as cur:
        found = payments_repository.find_payment_by_intent(cur, payment_intent_id)
        if found is None:
            logger.info(
                "payment intent not ours, ignoring",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        payment_intent_id=payment_intent_id,
                    )
                },
            )
            return "unknown_payment"

        booking_type, payment = found
        # Only pending payments move; replays are no-ops
        changed = payments_repository.update_payment_status(
            cur, booking_type, payment["id"], new_status
        )

    logger.info(
        "payment status settled",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                payment_id=payment["id"],
                booking_id=payment["booking_id"],
                new_status=new_status,
                changed=changed,
            )
        },
    )
    return "updated" if changed else "noop"


def handle_stripe_event(payload: dict) -> str:
    """Apply one Stripe event; safe to run more than once.

    Used inline by TasksClient and by POST /tasks/stripe/handle-event.

    Args:
        payload: Task payload from StripeWebhookEvent.to_task_payload().

    Returns:
        Outcome label for logging and the worker response.
    """
    event_type = payload.get("event_type", "")
    correlation_id = payload.get("correlation_id") or get_correlation_id()

    if event_type in PAYMENT_EVENTS:
        intent_id = payload.get("payment_intent_id") or payload.get("object_id")
        if not intent_id:
            return "missing_payment_intent"
        return _settle_payment(intent_id, PAYMENT_EVENTS[event_type], correlation_id)

    if event_type in REFUND_EVENTS:
        changed = [
            refund["id"]
            for refund in payload.get("refunds") or []
            if update_refund_status(refund["id"], refund.get("status") or "")
        ]
        return "updated" if changed else "noop"

    logger.info(
        "ignoring stripe event",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_type=event_type,
            )
        },
    )
    return "ignored"


@router.post("/handle-event")
async def handle_event(request: Request) -> Response:
    """Handle Stripe event task.

    Called by Cloud Tasks (or the http backend) with the payload built by
    the webhook receiver. 5xx responses make the queue retry.
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    event_id = payload.get("event_id", "")
    if not event_id or not payload.get("event_type"):
        logger.warning(
            "missing required fields",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    has_event_id=bool(event_id),
                    has_event_type=bool(payload.get("event_type")),
                )
            },
        )
        return Response(status_code=400, content="missing required fields")

    outcome = handle_stripe_event(payload)

    logger.info(
        "handle-event task completed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=event_id[:8],
                event_type=payload["event_type"],
                outcome=outcome,
            )
        },
    )
    return Response(status_code=200, content="ok")
