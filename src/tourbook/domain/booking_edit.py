"""Booking edit orchestration.

Flow for every edit:
authorize → resolve schedule → validate pickup time → price the change →
(no change | upcharge via PendingEdit | refund) → persist → publish.

Money moves before the booking is written, under a per-booking lease, and
the write is a compare-and-swap on the booking version. A failed money step
leaves the booking untouched. Publishing happens after commit and never
fails the edit.
"""

from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator

from tourbook.domain import refunds
from tourbook.domain.access import validate_booking_access, validate_pickup_time
from tourbook.domain.edit_data import BookingType, EditBookingData
from tourbook.domain.errors import (
    BookingConflict,
    BookingEditError,
    BookingLocked,
    GatewayError,
    InvalidUpchargeAmount,
    PendingEditInvalid,
    PersistenceError,
    UpchargeRequired,
)
from tourbook.domain.pricing import (
    PriceDifference,
    calculate_price_difference,
    classify_difference,
    stored_total_cents,
)
from tourbook.domain.refund_selection import refund_headroom, select_payments_to_refund
from tourbook.domain.schedules import ResolvedSchedule, current_service_time, resolve_schedule
from tourbook.domain.upcharge import process_upcharge_payment
from tourbook.events import booking_events
from tourbook.infra.edit_settings import EditSettings, get_edit_settings
from tourbook.infra.hashing import fingerprint
from tourbook.infra.repositories import (
    booking_locks_repository,
    bookings_repository,
    catalog_repository,
    outbox_repository,
    payments_repository,
    pending_edits_repository,
)
from tourbook.infra.time import utc_now
from tourbook.observability.correlation import get_correlation_id
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.stripe.client import StripeClient, StripeClientError

logger = get_logger(__name__)

REFUND_REASON = "Booking modification - price reduction"


@dataclass
class EditOutcome:
    """Result of a committed edit."""

    booking: dict[str, Any]
    price_difference: PriceDifference
    refund: refunds.RefundResult | None = None
    outbox_event_id: int | None = None

    @property
    def message(self) -> str:
        if self.refund is not None:
            return "Booking updated and refund initiated successfully"
        return "Booking updated successfully"


# ── Shared steps ─────────────────────────────────────────


def authorize(booking_type: BookingType, booking_id: str, user_id: str, role: str):
    result = validate_booking_access(booking_id, user_id, role, booking_type)
    result.raise_for_error()
    return result


def load_parent(booking_type: BookingType, parent_id: str | None) -> dict[str, Any] | None:
    from tourbook.infra.db import txn

    with txn() as cur:
        return catalog_repository.get_parent(cur, booking_type, parent_id)


def _resolve_and_check(
    edit: EditBookingData,
    settings: EditSettings,
    now: datetime,
) -> ResolvedSchedule:
    parent = load_parent(edit.booking_type, edit.parent_id)
    resolved = resolve_schedule(
        edit,
        parent,
        today=now.date(),
        default_currency=settings.default_currency,
    )
    validate_pickup_time(resolved, min_lead_hours=settings.min_lead_hours, now=now)
    return resolved


@contextmanager
def booking_lease(
    booking_type: BookingType,
    booking_id: str,
    *,
    ttl_seconds: int,
) -> Iterator[str]:
    """Hold the per-booking edit lease for the duration of the block.

    Raises:
        BookingLocked: Another request holds a live lease.
    """
    from tourbook.infra.db import txn

    lock_token = str(uuid.uuid4())
    with txn() as cur:
        acquired = booking_locks_repository.acquire_lock(
            cur,
            booking_type,
            booking_id,
            lock_token=lock_token,
            ttl_seconds=ttl_seconds,
        )
    if not acquired:
        raise BookingLocked()

    try:
        yield lock_token
    finally:
        try:
            with txn() as cur:
                booking_locks_repository.release_lock(
                    cur, booking_type, booking_id, lock_token=lock_token
                )
        except Exception:
            # The lease expires on its own after ttl_seconds.
            logger.exception(
                "failed to release booking lease",
                extra={"extra_fields": safe_log_context(booking_id=booking_id)},
            )


def ensure_current_version(booking_type: BookingType, booking: dict[str, Any]) -> None:
    """Fail before any money moves if the booking changed since it was read."""
    from tourbook.infra.db import txn

    with txn() as cur:
        current = bookings_repository.get_booking(cur, booking_type, booking["id"])
    if current is None or current["version"] != booking["version"]:
        raise BookingConflict()


# ── Preview ──────────────────────────────────────────────


def preview_edit(
    booking_type: BookingType,
    booking_id: str,
    edit: EditBookingData,
    *,
    user_id: str,
    role: str,
    now: datetime | None = None,
) -> PriceDifference:
    """Price a requested change without touching anything.

    Raises:
        BookingEditError: Access, schedule, pickup or guest-count problems.
    """
    now = now or utc_now()
    settings = get_edit_settings()
    access = authorize(booking_type, booking_id, user_id, role)
    resolved = _resolve_and_check(edit, settings, now)
    return calculate_price_difference(access.booking, edit, resolved)


# ── Upcharge ─────────────────────────────────────────────


def create_upcharge_intent(
    booking_type: BookingType,
    booking_id: str,
    edit: EditBookingData,
    upcharge_amount_cents: int,
    *,
    user_id: str,
    role: str,
    stripe_client: StripeClient | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Start collecting an upcharge and remember the edit it pays for.

    The delta is recomputed here; the client-sent amount must match it.
    The booking is not modified.

    Returns:
        Dict with client_secret, payment_intent_id, payment_id,
        amount_cents and pending_edit_token.

    Raises:
        InvalidUpchargeAmount: Amount not positive or not the actual delta.
        GatewayError: Stripe failed; no payment record exists.
    """
    if upcharge_amount_cents <= 0:
        raise InvalidUpchargeAmount()

    from tourbook.infra.db import txn

    now = now or utc_now()
    settings = get_edit_settings()
    access = authorize(booking_type, booking_id, user_id, role)
    booking = access.booking
    resolved = _resolve_and_check(edit, settings, now)
    diff = calculate_price_difference(booking, edit, resolved)

    if diff.type != "upcharge" or diff.difference_cents != upcharge_amount_cents:
        raise InvalidUpchargeAmount("Upcharge amount does not match the price difference")

    edit_key = fingerprint(edit.to_dict())
    result = process_upcharge_payment(
        booking_id=booking_id,
        booking_reference=booking.get("booking_reference"),
        booking_type=booking_type,
        user=access.user,
        amount_cents=upcharge_amount_cents,
        currency=diff.new_pricing["currency"],
        metadata={
            "originalAmount": str(diff.original_amount_cents),
            "newAmount": str(diff.new_amount_cents),
            "editData": json.dumps(edit.to_dict(), separators=(",", ":")),
        },
        idempotency_key=f"upcharge:{booking_type}:{booking_id}:v{booking['version']}:{edit_key}",
        stripe_client=stripe_client or StripeClient(),
    )

    try:
        with txn() as cur:
            token = pending_edits_repository.insert_pending_edit(
                cur,
                booking_type=booking_type,
                booking_id=booking_id,
                payment_id=result.payment_id,
                payment_intent_id=result.payment_intent_id,
                edit_data=edit.to_dict(),
                original_amount_cents=diff.original_amount_cents,
                new_pricing=diff.new_pricing,
                booking_version=booking["version"],
                ttl_minutes=settings.pending_edit_ttl_minutes,
            )
    except Exception as e:
        logger.exception(
            "pending edit insert failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    payment_id=result.payment_id,
                )
            },
        )
        raise PersistenceError() from e

    return {
        "client_secret": result.client_secret,
        "payment_intent_id": result.payment_intent_id,
        "payment_id": result.payment_id,
        "amount_cents": result.amount_cents,
        "pending_edit_token": token,
    }


def _load_pending_edit(
    token: str,
    booking_type: BookingType,
    booking: dict[str, Any],
) -> dict[str, Any]:
    from tourbook.infra.db import txn

    with txn() as cur:
        pending = pending_edits_repository.get_pending_edit(cur, token)

    if (
        pending is None
        or pending["booking_type"] != booking_type
        or pending["booking_id"] != booking["id"]
    ):
        raise PendingEditInvalid()
    if pending["consumed_at"] is not None:
        raise PendingEditInvalid("This change has already been applied")
    if (
        pending["booking_version"] != booking["version"]
        or pending["original_amount_cents"] != stored_total_cents(booking)
    ):
        raise PendingEditInvalid("Booking changed since the payment was started")
    return pending


def _difference_from_pending(pending: dict[str, Any]) -> PriceDifference:
    new_pricing = dict(pending["new_pricing"])
    original = int(pending["original_amount_cents"])
    new_amount = int(new_pricing["total_amount_cents"])
    return PriceDifference(
        original_amount_cents=original,
        new_amount_cents=new_amount,
        difference_cents=new_amount - original,
        type=classify_difference(new_amount - original),
        new_pricing=new_pricing,
    )


def _ensure_upcharge_paid(
    pending: dict[str, Any],
    booking_type: BookingType,
    expected_cents: int,
    stripe_client: StripeClient | None,
) -> None:
    """Require the pending edit's upcharge to be paid in full.

    A pending payment is checked against Stripe directly, since the
    payment webhook may not have arrived yet.
    """
    from tourbook.infra.db import txn

    with txn() as cur:
        payment = payments_repository.get_payment(cur, booking_type, pending["payment_id"])

    if payment is None or int(payment["amount_cents"]) != expected_cents:
        raise PendingEditInvalid()

    status = payment["payment_status"]
    if status == "completed":
        return
    if status == "failed":
        raise UpchargeRequired("The additional payment failed, please try again")
    if pending.get("is_expired"):
        raise PendingEditInvalid("Pending edit has expired, please start again")

    try:
        intent = (stripe_client or StripeClient()).retrieve_payment_intent(
            pending["payment_intent_id"]
        )
    except StripeClientError as e:
        raise GatewayError() from e

    if intent["status"] != "succeeded":
        raise UpchargeRequired("The additional payment has not been completed")

    with txn() as cur:
        payments_repository.update_payment_status(cur, booking_type, payment["id"], "completed")


# ── Refund ───────────────────────────────────────────────


def _refund_difference(
    booking_type: BookingType,
    booking: dict[str, Any],
    diff: PriceDifference,
    stripe_client: StripeClient,
    now: datetime,
) -> refunds.RefundResult:
    """Refund the policy share of a price decrease from past payments."""
    from tourbook.infra.db import txn

    service_at = current_service_time(
        booking_type, booking, load_parent(booking_type, booking.get("parent_id"))
    )
    policy = refunds.load_refund_policy()
    quote = refunds.quote_refund(diff.refund_amount_cents, service_at, policy, now)

    with txn() as cur:
        payments = payments_repository.list_completed_payments(cur, booking_type, booking["id"])
    allocations = select_payments_to_refund(payments, quote.amount_cents)

    scope = f"v{booking['version']}"
    if len(allocations) == 1:
        allocation = allocations[0]
        return refunds.process_refund(
            refunds.RefundRequest(
                payment_intent_id=allocation.payment_intent_id,
                payment_id=allocation.payment_id,
                payment_amount_cents=refund_headroom(allocation.payment),
                booking_id=booking["id"],
                booking_type=booking_type,
                service_at=service_at,
                reason=REFUND_REASON,
                is_downgrade=True,
                downgrade_difference_cents=diff.difference_cents,
                idempotency_scope=scope,
            ),
            stripe_client=stripe_client,
            policy=policy,
            now=now,
        )

    return refunds.process_multi_payment_refund(
        allocations,
        booking_type=booking_type,
        booking_id=booking["id"],
        service_at=service_at,
        reason=REFUND_REASON,
        stripe_client=stripe_client,
        policy=policy,
        idempotency_scope=scope,
        now=now,
    )


# ── Persist ──────────────────────────────────────────────


def _audit_note(diff: PriceDifference, refund: refunds.RefundResult | None, now: datetime) -> str:
    note = f"Booking updated on {now.isoformat()}"
    if refund is not None:
        note += f" (refund {refund.amount_cents} cents, {refund.percentage}%)"
    elif diff.type == "upcharge":
        note += f" (upcharge {diff.upcharge_amount_cents} cents)"
    return note


def _persist(
    booking_type: BookingType,
    booking: dict[str, Any],
    edit: EditBookingData,
    resolved: ResolvedSchedule,
    diff: PriceDifference,
    *,
    pending_token: str | None,
    refund: refunds.RefundResult | None,
    now: datetime,
) -> tuple[dict[str, Any], int]:
    from tourbook.infra.db import txn

    pickup_details = {
        "pickup_location_id": resolved.pickup_location_id,
        "pickup_location_name": resolved.pickup_location_name,
        "hotel_id": edit.hotel_id,
        "pickup_time_id": edit.pickup_time_id,
        "pickup_time": resolved.pickup_at.isoformat() if resolved.pickup_at else None,
        "service_time": resolved.service_at.isoformat(),
    }
    schedule_value: Any = resolved.schedule_id if booking_type == "event" else resolved.service_at

    try:
        with txn() as cur:
            updated = bookings_repository.update_booking_details(
                cur,
                booking_type,
                booking["id"],
                expected_version=booking["version"],
                parent_id=edit.parent_id,
                schedule_value=schedule_value,
                adult_count=edit.adult_count,
                child_count=edit.child_count,
                pickup_details=pickup_details,
                pricing=diff.new_pricing,
                note=_audit_note(diff, refund, now),
            )
            if updated is None:
                raise BookingConflict()

            if pending_token and not pending_edits_repository.consume_pending_edit(cur, pending_token):
                raise PendingEditInvalid("This change has already been applied")

            outbox_id = outbox_repository.emit_booking_updated(
                cur,
                booking_type=booking_type,
                booking_id=booking["id"],
                change_type=booking_events.change_type_for(diff.type),
                version=updated["version"],
                refund_amount_cents=refund.amount_cents if refund else 0,
                upcharge_amount_cents=diff.upcharge_amount_cents,
                correlation_id=get_correlation_id() or None,
            )
    except Exception as e:
        if refund is not None:
            logger.error(
                "booking write failed after refund, manual reconciliation required",
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
        raise PersistenceError() from e

    parent_key, schedule_key = (
        ("event_id", "schedule_id") if booking_type == "event" else ("tour_id", "scheduled_date")
    )
    saved = {
        **booking,
        "parent_id": edit.parent_id,
        parent_key: edit.parent_id,
        schedule_key: schedule_value,
        "adult_count": edit.adult_count,
        "child_count": edit.child_count,
        "pickup_details": pickup_details,
        "pricing": diff.new_pricing,
        "version": updated["version"],
        "updated_at": updated["updated_at"],
    }
    return saved, outbox_id


# ── Apply ────────────────────────────────────────────────


def apply_edit(
    booking_type: BookingType,
    booking_id: str,
    edit: EditBookingData,
    *,
    user_id: str,
    role: str,
    pending_edit_token: str | None = None,
    stripe_client: StripeClient | None = None,
    now: datetime | None = None,
) -> EditOutcome:
    """Apply a booking change, settling any price difference first.

    Without a pending edit token, the change must not cost more than the
    stored total. With one, the stored edit (not the request's) is applied
    once its upcharge payment has succeeded.

    Raises:
        BookingEditError: Any access, validation, payment or concurrency failure.
            The booking is unchanged whenever this is raised.
    """
    now = now or utc_now()
    settings = get_edit_settings()
    access = authorize(booking_type, booking_id, user_id, role)
    booking = access.booking

    pending = None
    if pending_edit_token:
        pending = _load_pending_edit(pending_edit_token, booking_type, booking)
        stored_edit = EditBookingData.from_dict(pending["edit_data"])
        if stored_edit != edit:
            logger.info(
                "request edit differs from pending edit, using stored edit",
                extra={"extra_fields": safe_log_context(booking_id=booking_id)},
            )
        edit = stored_edit

    resolved = _resolve_and_check(edit, settings, now)

    if pending is not None:
        diff = _difference_from_pending(pending)
    else:
        diff = calculate_price_difference(booking, edit, resolved)
        if diff.type == "upcharge":
            raise UpchargeRequired()

    refund = None
    with booking_lease(booking_type, booking_id, ttl_seconds=settings.lock_ttl_seconds):
        ensure_current_version(booking_type, booking)

        if pending is not None and diff.type == "upcharge":
            _ensure_upcharge_paid(pending, booking_type, diff.difference_cents, stripe_client)

        if diff.type == "refund":
            refund = _refund_difference(
                booking_type, booking, diff, stripe_client or StripeClient(), now
            )

        saved, outbox_id = _persist(
            booking_type,
            booking,
            edit,
            resolved,
            diff,
            pending_token=pending_edit_token if pending is not None else None,
            refund=refund,
            now=now,
        )

    logger.info(
        "booking edit applied",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking_id,
                booking_type=booking_type,
                difference_type=diff.type,
                difference_cents=diff.difference_cents,
                refund_id=refund.refund_id if refund else None,
                version=saved["version"],
            )
        },
    )

    booking_events.publish_booking_updated(
        booking_events.BookingUpdated(
            booking_type=booking_type,
            booking_id=booking_id,
            change_type=booking_events.change_type_for(diff.type),
            version=saved["version"],
            outbox_event_id=outbox_id,
            refund_amount_cents=refund.amount_cents if refund else 0,
            upcharge_amount_cents=diff.upcharge_amount_cents,
            correlation_id=get_correlation_id() or None,
        )
    )

    return EditOutcome(
        booking=saved,
        price_difference=diff,
        refund=refund,
        outbox_event_id=outbox_id,
    )
