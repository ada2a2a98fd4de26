"""Refund processing for booking edits and cancellations.

Policy (percentage by notice period) is enforced before any gateway call.
Per-payment refund state moves not_refunded -> pending -> refunded | failed:
pending is written before Stripe is called, the outcome after. Database
transactions never span the gateway call.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tourbook.domain.edit_data import BookingType
from tourbook.domain.errors import (
    BookingConflict,
    BookingEditError,
    GatewayError,
    PersistenceError,
    RefundNotEligible,
)
from tourbook.domain.refund_selection import RefundAllocation
from tourbook.infra.repositories import payments_repository, refunds_repository
from tourbook.infra.time import hours_until, utc_now
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context
from tourbook.stripe.client import StripeClient, StripeClientError

logger = get_logger(__name__)

DEFAULT_POLICY_TIERS: list[dict[str, Any]] = [
    {"min_hours_before_service": 12, "refund_percent": 100},
    {"min_hours_before_service": 0, "refund_percent": 50},
]

# Stripe refund status -> our refund status
_GATEWAY_STATUS = {
    "succeeded": "refunded",
    "pending": "pending",
    "requires_action": "pending",
    "failed": "failed",
    "canceled": "failed",
}


# ── Policy ────────────────────────────────────────────────


@dataclass(frozen=True)
class RefundTier:
    """Refund refund_percent when more than min_hours_before_service remain."""

    min_hours_before_service: float
    refund_percent: int


@dataclass(frozen=True)
class RefundPolicy:
    """Ordered refund tiers. No matching tier means no refund."""

    tiers: tuple[RefundTier, ...]
    source: str = "default"

    def percentage_for(self, hours_until_service: float) -> int:
        for tier in sorted(self.tiers, key=lambda t: t.min_hours_before_service, reverse=True):
            if hours_until_service > tier.min_hours_before_service:
                return tier.refund_percent
        return 0

    def to_dicts(self) -> list[dict[str, Any]]:
        return [
            {
                "min_hours_before_service": t.min_hours_before_service,
                "refund_percent": t.refund_percent,
            }
            for t in sorted(self.tiers, key=lambda t: t.min_hours_before_service, reverse=True)
        ]

    @classmethod
    def from_dicts(cls, tiers: list[dict[str, Any]], source: str) -> "RefundPolicy":
        return cls(
            tiers=tuple(
                RefundTier(
                    min_hours_before_service=float(t["min_hours_before_service"]),
                    refund_percent=int(t["refund_percent"]),
                )
                for t in tiers
            ),
            source=source,
        )


def validate_tiers(tiers: list[dict[str, Any]]) -> None:
    """Raise ValueError describing the first invalid tier, if any."""
    if not tiers:
        raise ValueError("at least one tier is required")
    seen: set[float] = set()
    for tier in tiers:
        hours = float(tier["min_hours_before_service"])
        percent = int(tier["refund_percent"])
        if hours < 0:
            raise ValueError("min_hours_before_service must be >= 0")
        if not 0 <= percent <= 100:
            raise ValueError("refund_percent must be between 0 and 100")
        if hours in seen:
            raise ValueError("min_hours_before_service values must be unique")
        seen.add(hours)


def _policy_from_env() -> RefundPolicy | None:
    raw = os.environ.get("REFUND_POLICY_TIERS", "").strip()
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
        tiers = [
            {"min_hours_before_service": t["min_hours"], "refund_percent": t["percent"]}
            for t in parsed
        ]
        validate_tiers(tiers)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(
            "invalid REFUND_POLICY_TIERS, using default policy",
            extra={"extra_fields": safe_log_context(error=str(e))},
        )
        return None
    return RefundPolicy.from_dicts(tiers, source="env")


def load_refund_policy() -> RefundPolicy:
    """Refund policy from the database, else REFUND_POLICY_TIERS, else the default."""
    from tourbook.infra.db import txn
    from tourbook.infra.repositories import refund_policy_repository

    with txn() as cur:
        db_tiers = refund_policy_repository.list_tiers(cur)
    if db_tiers:
        return RefundPolicy.from_dicts(db_tiers, source="database")
    return _policy_from_env() or RefundPolicy.from_dicts(DEFAULT_POLICY_TIERS, source="default")


def apply_percentage(amount_cents: int, percentage: int) -> int:
    """Percentage of an amount in cents, rounded half up."""
    return (amount_cents * percentage + 50) // 100


@dataclass(frozen=True)
class RefundQuote:
    amount_cents: int
    percentage: int
    hours_until_service: float


def eligible_percentage(
    service_at: datetime,
    policy: RefundPolicy,
    now: datetime | None = None,
) -> int:
    """Refund percentage for a service start, raising if it is zero.

    Raises:
        RefundNotEligible: If the policy grants nothing at this notice.
    """
    percentage = policy.percentage_for(hours_until(service_at, now))
    if percentage <= 0:
        raise RefundNotEligible()
    return percentage


def quote_refund(
    amount_cents: int,
    service_at: datetime,
    policy: RefundPolicy,
    now: datetime | None = None,
) -> RefundQuote:
    """Refund owed on amount_cents under the policy for this service start.

    Raises:
        RefundNotEligible: If the policy grants nothing at this notice.
    """
    now = now or utc_now()
    percentage = eligible_percentage(service_at, policy, now)
    return RefundQuote(
        amount_cents=apply_percentage(abs(amount_cents), percentage),
        percentage=percentage,
        hours_until_service=hours_until(service_at, now),
    )


# ── Execution ─────────────────────────────────────────────


@dataclass(frozen=True)
class RefundRequest:
    """Refund of a single payment.

    payment_amount_cents is the payment's unrefunded headroom. For a
    downgrade, the refund is the policy share of the price difference;
    otherwise it is the policy share of the payment.
    """

    payment_intent_id: str
    payment_id: str
    payment_amount_cents: int
    booking_id: str
    booking_type: BookingType
    service_at: datetime
    reason: str
    is_downgrade: bool = False
    downgrade_difference_cents: int = 0
    idempotency_scope: str = ""


@dataclass
class RefundResult:
    """Outcome of a refund run across one or more payments."""

    success: bool
    refund_id: str | None
    amount_cents: int
    percentage: int
    refunds: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class _RefundItem:
    payment_id: str
    payment_intent_id: str
    amount_cents: int


def process_refund(
    request: RefundRequest,
    *,
    stripe_client: StripeClient,
    policy: RefundPolicy,
    now: datetime | None = None,
) -> RefundResult:
    """Refund one payment according to the refund policy.

    Raises:
        RefundNotEligible: Policy grants nothing; no gateway call is made.
        GatewayError: Stripe rejected or failed the refund.
    """
    percentage = eligible_percentage(request.service_at, policy, now)
    base = abs(request.downgrade_difference_cents) if request.is_downgrade else request.payment_amount_cents
    amount = min(apply_percentage(base, percentage), request.payment_amount_cents)

    return _execute_refunds(
        [_RefundItem(request.payment_id, request.payment_intent_id, amount)],
        booking_type=request.booking_type,
        booking_id=request.booking_id,
        percentage=percentage,
        reason=request.reason,
        idempotency_scope=request.idempotency_scope,
        stripe_client=stripe_client,
    )


def process_multi_payment_refund(
    allocations: list[RefundAllocation],
    *,
    booking_type: BookingType,
    booking_id: str,
    service_at: datetime,
    reason: str,
    stripe_client: StripeClient,
    policy: RefundPolicy,
    idempotency_scope: str = "",
    now: datetime | None = None,
) -> RefundResult:
    """Refund the allocated amount from each payment, one Stripe refund each.

    Allocations already carry policy-adjusted amounts; eligibility is
    re-checked here so no gateway call happens outside the policy.

    Raises:
        RefundNotEligible: Policy grants nothing; no gateway call is made.
        GatewayError: A Stripe refund failed; unconfirmed payments are marked failed.
    """
    percentage = eligible_percentage(service_at, policy, now)
    items = [
        _RefundItem(a.payment_id, a.payment_intent_id, a.allocated_cents)
        for a in allocations
        if a.allocated_cents > 0
    ]
    return _execute_refunds(
        items,
        booking_type=booking_type,
        booking_id=booking_id,
        percentage=percentage,
        reason=reason,
        idempotency_scope=idempotency_scope,
        stripe_client=stripe_client,
    )


def _execute_refunds(
    items: list[_RefundItem],
    *,
    booking_type: BookingType,
    booking_id: str,
    percentage: int,
    reason: str,
    idempotency_scope: str,
    stripe_client: StripeClient,
) -> RefundResult:
    from tourbook.infra.db import txn

    confirmed: list[dict[str, Any]] = []
    confirmed_ids: set[str] = set()
    claimed: list[str] = []

    try:
        # Every payment is claimed before the first gateway call
        for item in items:
            with txn() as cur:
                if not payments_repository.mark_refund_pending(cur, booking_type, item.payment_id):
                    raise BookingConflict("A refund is already in progress for this booking")
            claimed.append(item.payment_id)

        for item in items:
            refund = stripe_client.create_refund(
                payment_intent_id=item.payment_intent_id,
                amount_cents=item.amount_cents,
                metadata={
                    "bookingId": booking_id,
                    "bookingType": booking_type,
                    "paymentId": item.payment_id,
                    "refundPercentage": str(percentage),
                    "reason": reason,
                },
                idempotency_key=(
                    f"refund:{booking_type}:{booking_id}:{item.payment_id}:{idempotency_scope}"
                ),
            )
            status = _GATEWAY_STATUS.get(refund["status"], "pending")
            if status == "failed":
                raise GatewayError("Refund was declined by the payment processor")

            # The refund exists at Stripe from here on; never mark it failed.
            confirmed_ids.add(item.payment_id)
            _record_refund(
                booking_type=booking_type,
                booking_id=booking_id,
                item=item,
                refund_id=refund["id"],
                status=status,
                percentage=percentage,
                reason=reason,
            )
            confirmed.append(
                {
                    "payment_id": item.payment_id,
                    "refund_id": refund["id"],
                    "amount_cents": item.amount_cents,
                    "status": status,
                }
            )
    except Exception as exc:
        # A payment claimed by a concurrent refund is never in claimed
        unconfirmed = [p for p in claimed if p not in confirmed_ids]
        _mark_failed(booking_type, booking_id, unconfirmed)
        logger.error(
            "refund batch failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    booking_type=booking_type,
                    confirmed_refunds=len(confirmed),
                    failed_payments=len(unconfirmed),
                    error_type=type(exc).__name__,
                )
            },
        )
        if isinstance(exc, StripeClientError):
            raise GatewayError() from exc
        if isinstance(exc, BookingEditError):
            raise
        raise GatewayError() from exc

    total = sum(r["amount_cents"] for r in confirmed)
    logger.info(
        "refunds issued",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking_id,
                booking_type=booking_type,
                refund_ids=",".join(r["refund_id"] for r in confirmed),
                amount_cents=total,
                percentage=percentage,
            )
        },
    )
    return RefundResult(
        success=True,
        refund_id=confirmed[0]["refund_id"] if confirmed else None,
        amount_cents=total,
        percentage=percentage,
        refunds=confirmed,
    )


def _record_refund(
    *,
    booking_type: BookingType,
    booking_id: str,
    item: _RefundItem,
    refund_id: str,
    status: str,
    percentage: int,
    reason: str,
) -> None:
    from tourbook.infra.db import txn

    note = (
        f"Refund {refund_id} of {item.amount_cents} cents ({percentage}%) "
        f"issued on {utc_now().isoformat()}: {reason}"
    )
    try:
        with txn() as cur:
            payments_repository.record_refund(
                cur,
                booking_type,
                item.payment_id,
                amount_cents=item.amount_cents,
                refund_status=status,
                stripe_refund_id=refund_id,
                note=note,
            )
            refunds_repository.insert_refund(
                cur,
                booking_type=booking_type,
                booking_id=booking_id,
                payment_id=item.payment_id,
                stripe_refund_id=refund_id,
                amount_cents=item.amount_cents,
                percentage=percentage,
                reason=reason,
                status=status,
            )
    except Exception as e:
        logger.exception(
            "refund issued but not recorded, manual reconciliation required",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    booking_type=booking_type,
                    payment_id=item.payment_id,
                    refund_id=refund_id,
                    amount_cents=item.amount_cents,
                )
            },
        )
        raise PersistenceError("Refund was issued but could not be recorded") from e


def _mark_failed(
    booking_type: BookingType,
    booking_id: str,
    payment_ids: list[str],
) -> None:
    from tourbook.infra.db import txn

    if not payment_ids:
        return
    try:
        with txn() as cur:
            payments_repository.mark_refunds_failed(
                cur,
                booking_type,
                payment_ids,
                note=f"Refund failed on {utc_now().isoformat()}",
            )
    except Exception:
        logger.exception(
            "failed to mark refunds as failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking_id,
                    payment_count=len(payment_ids),
                )
            },
        )


# ── Webhook settlement ───────────────────────────────────


def update_refund_status(stripe_refund_id: str, gateway_status: str) -> bool:
    """Settle a refund from a Stripe webhook.

    Args:
        stripe_refund_id: Stripe refund id.
        gateway_status: Stripe refund status.

    Returns:
        True if one of our refunds changed state.
    """
    from tourbook.infra.db import txn

    status = _GATEWAY_STATUS.get(gateway_status)
    if status is None:
        return False

    with txn() as cur:
        row = refunds_repository.update_refund_status(cur, stripe_refund_id, status)
        if row is None:
            logger.info(
                "webhook refund not found in ledger",
                extra={"extra_fields": safe_log_context(refund_id=stripe_refund_id)},
            )
            return False

        if row["previous_status"] == status:
            return False

        release = row["amount_cents"] if status == "failed" and row["previous_status"] != "failed" else 0
        payments_repository.apply_refund_outcome(
            cur,
            row["booking_type"],
            row["payment_id"],
            refund_status=status,
            release_cents=release,
        )

    logger.info(
        "refund status settled",
        extra={
            "extra_fields": safe_log_context(
                refund_id=stripe_refund_id,
                booking_id=row["booking_id"],
                payment_id=row["payment_id"],
                previous_status=row["previous_status"],
                status=status,
            )
        },
    )
    return True
