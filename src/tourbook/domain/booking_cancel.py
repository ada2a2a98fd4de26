"""Booking cancellation with a policy refund.

authorize → lease → quote the refund on the unrefunded total → refund →
mark cancelled (version compare-and-swap) → publish.

The refund moves before the status write. A booking the policy grants no
refund for is not cancelled here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tourbook.domain import booking_edit, refunds
from tourbook.domain.edit_data import BookingType
from tourbook.domain.errors import (
    BookingConflict,
    BookingEditError,
    BookingNotEditable,
    InsufficientRefundableFunds,
    PersistenceError,
)
from tourbook.domain.refund_selection import (
    refund_headroom,
    refundable_payments,
    select_payments_to_refund,
)
from tourbook.domain.schedules import current_service_time
from tourbook.events import booking_events
from tourbook.infra.edit_settings import get_edit_settings
from tourbook.infra.repositories import bookings_repository, outbox_repository, payments_repository
from tourbook.infra.time import utc_now
from tourbook.observability.correlation import get_correlation_id
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.stripe.client import StripeClient

logger = get_logger(__name__)

CANCEL_REASON = "Booking cancelled"


@dataclass
class CancelOutcome:
    booking_id: str
    version: int
    refund: refunds.RefundResult
    outbox_event_id: int

    @property
    def message(self) -> str:
        return (
            f"Booking cancelled. A refund of {self.refund.percentage}% has been initiated "
            "and will appear in your account within 5-10 business days."
        )


def _refund_for_cancellation(
    booking_type: BookingType,
    booking: dict[str, Any],
    stripe_client: StripeClient,
    now: datetime,
) -> refunds.RefundResult:
    from tourbook.infra.db import txn

    with txn() as cur:
        payments = payments_repository.list_completed_payments(cur, booking_type, booking["id"])
    candidates = refundable_payments(payments)
    available = sum(refund_headroom(p) for p in candidates)
    if available <= 0:
        raise InsufficientRefundableFunds("No refundable amount available for this booking")

    service_at = current_service_time(
        booking_type, booking, booking_edit.load_parent(booking_type, booking.get("parent_id"))
    )
    policy = refunds.load_refund_policy()
    quote = refunds.quote_refund(available, service_at, policy, now)

    # Distinct from edit refunds issued at the same version
    scope = f"cancel-v{booking['version']}"
    if len(candidates) == 1:
        payment = candidates[0]
        return refunds.process_refund(
            refunds.RefundRequest(
                payment_intent_id=payment["stripe_payment_intent_id"],
                payment_id=payment["id"],
                payment_amount_cents=refund_headroom(payment),
                booking_id=booking["id"],
                booking_type=booking_type,
                service_at=service_at,
                reason=CANCEL_REASON,
                idempotency_scope=scope,
            ),
            stripe_client=stripe_client,
            policy=policy,
            now=now,
        )

    return refunds.process_multi_payment_refund(
        select_payments_to_refund(payments, quote.amount_cents),
        booking_type=booking_type,
        booking_id=booking["id"],
        service_at=service_at,
        reason=CANCEL_REASON,
        stripe_client=stripe_client,
        policy=policy,
        idempotency_scope=scope,
        now=now,
    )


def _persist_cancellation(
    booking_type: BookingType,
    booking: dict[str, Any],
    refund: refunds.RefundResult,
    now: datetime,
) -> tuple[int, int]:
    from tourbook.infra.db import txn

    note = (
        f"Booking cancelled on {now.isoformat()} "
        f"(refund {refund.amount_cents} cents, {refund.percentage}%)"
    )
    try:
        with txn() as cur:
            updated = bookings_repository.cancel_booking(
                cur,
                booking_type,
                booking["id"],
                expected_version=booking["version"],
                note=note,
            )
            if updated is None:
                raise BookingConflict()

            outbox_id = outbox_repository.emit_booking_updated(
                cur,
                booking_type=booking_type,
                booking_id=booking["id"],
                change_type=booking_events.CHANGE_CANCELLED,
                version=updated["version"],
                refund_amount_cents=refund.amount_cents,
                correlation_id=get_correlation_id() or None,
            )
    except Exception as e:
        logger.error(
            "booking cancel failed after refund, manual reconciliation required",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking["id"],
                    booking_type=booking_type,
                    refund_ids=",".join(r["refund_id"] for r in refund.refunds),
                    refund_amount_cents=refund.amount_cents,
                    error_type=type(e).__name__,
                )
            },
        )
        if isinstance(e, BookingEditError):
            raise
        raise PersistenceError("Failed to cancel booking") from e

    return updated["version"], outbox_id


def cancel_booking(
    booking_type: BookingType,
    booking_id: str,
    *,
    user_id: str,
    role: str,
    stripe_client: StripeClient | None = None,
    now: datetime | None = None,
) -> CancelOutcome:
    """Cancel a booking and refund the policy share of what was paid.

    Raises:
        BookingEditError: Access, refund eligibility, payment or concurrency
            failure. The booking is not cancelled whenever this is raised.
    """
    now = now or utc_now()
    settings = get_edit_settings()
    try:
        access = booking_edit.authorize(booking_type, booking_id, user_id, role)
    except BookingNotEditable:
        raise BookingNotEditable("This booking cannot be cancelled")
    booking = access.booking

    with booking_edit.booking_lease(booking_type, booking_id, ttl_seconds=settings.lock_ttl_seconds):
        booking_edit.ensure_current_version(booking_type, booking)
        refund = _refund_for_cancellation(booking_type, booking, stripe_client or StripeClient(), now)
        version, outbox_id = _persist_cancellation(booking_type, booking, refund, now)

    logger.info(
        "booking cancelled",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking_id,
                booking_type=booking_type,
                refund_id=refund.refund_id,
                refund_amount_cents=refund.amount_cents,
                version=version,
            )
        },
    )

    booking_events.publish_booking_updated(
        booking_events.BookingUpdated(
            booking_type=booking_type,
            booking_id=booking_id,
            change_type=booking_events.CHANGE_CANCELLED,
            version=version,
            outbox_event_id=outbox_id,
            refund_amount_cents=refund.amount_cents,
            correlation_id=get_correlation_id() or None,
        )
    )

    return CancelOutcome(
        booking_id=booking_id,
        version=version,
        refund=refund,
        outbox_event_id=outbox_id,
    )
