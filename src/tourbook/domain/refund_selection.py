"""Choose which historical payments fund a refund.

Greedy over completed payments, oldest first, each contributing up to its
unrefunded headroom. Either the full amount is allocated or nothing is.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tourbook.domain.errors import InsufficientRefundableFunds

# A payment with a refund already in flight is never drawn from again
# until the gateway settles it.
REFUNDABLE_STATUSES = frozenset({"not_refunded", "refunded", "failed"})


@dataclass(frozen=True)
class RefundAllocation:
    """Amount to refund from one payment."""

    payment: dict[str, Any]
    payment_intent_id: str
    allocated_cents: int

    @property
    def payment_id(self) -> str:
        return self.payment["id"]


def refund_headroom(payment: dict[str, Any]) -> int:
    """Amount of the payment not yet refunded."""
    return max(0, int(payment["amount_cents"]) - int(payment.get("refunded_amount_cents") or 0))


def refundable_payments(payments: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Payments a refund may draw from, preserving the given order."""
    return [
        p
        for p in payments
        if p.get("payment_status") == "completed"
        and p.get("refund_status", "not_refunded") in REFUNDABLE_STATUSES
        and p.get("stripe_payment_intent_id")
        and refund_headroom(p) > 0
    ]


def calculate_refundable_amount(payments: list[dict[str, Any]]) -> int:
    """Total headroom across refundable payments."""
    return sum(refund_headroom(p) for p in refundable_payments(payments))


def select_payments_to_refund(
    payments: list[dict[str, Any]],
    required_cents: int,
) -> list[RefundAllocation]:
    """Allocate required_cents across payments, oldest first.

    Args:
        payments: Booking payments ordered oldest first.
        required_cents: Amount to refund (positive).

    Returns:
        Allocations whose amounts sum to required_cents.

    Raises:
        InsufficientRefundableFunds: If no payment is refundable or the
            total headroom is smaller than required_cents.
    """
    if required_cents <= 0:
        return []

    candidates = refundable_payments(payments)
    if not candidates:
        raise InsufficientRefundableFunds()

    available = sum(refund_headroom(p) for p in candidates)
    if available < required_cents:
        raise InsufficientRefundableFunds(
            f"Refund amount ({format_cents(required_cents)}) exceeds available "
            f"refund amount ({format_cents(available)})"
        )

    allocations: list[RefundAllocation] = []
    remaining = required_cents
    for payment in candidates:
        if remaining <= 0:
            break
        take = min(remaining, refund_headroom(payment))
        allocations.append(
            RefundAllocation(
                payment=payment,
                payment_intent_id=payment["stripe_payment_intent_id"],
                allocated_cents=take,
            )
        )
        remaining -= take

    return allocations


def format_cents(amount_cents: int) -> str:
    """Format cents as a dollar string, e.g. 12050 -> "$120.50"."""
    return f"${amount_cents / 100:,.2f}"
