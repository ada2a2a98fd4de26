"""Price delta calculation for booking edits.

All amounts are integer cents. The calculator is side-effect free: calling it
twice with the same booking, edit and catalog gives the same answer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from tourbook.domain.edit_data import EditBookingData
from tourbook.domain.errors import InvalidGuestCount
from tourbook.domain.schedules import ResolvedSchedule

DifferenceType = Literal["upcharge", "refund", "none"]

# Differences smaller than this are treated as no change.
ROUNDING_THRESHOLD_CENTS = 1


@dataclass(frozen=True)
class PriceDifference:
    """Outcome of pricing a requested change against the stored booking."""

    original_amount_cents: int
    new_amount_cents: int
    difference_cents: int
    type: DifferenceType
    new_pricing: dict[str, Any] = field(default_factory=dict)

    @property
    def refund_amount_cents(self) -> int:
        return -self.difference_cents if self.type == "refund" else 0

    @property
    def upcharge_amount_cents(self) -> int:
        return self.difference_cents if self.type == "upcharge" else 0

    def to_response(self) -> dict[str, Any]:
        """Public API shape: {priceDifference: {...}, newPricing: {...}}."""
        return {
            "priceDifference": {
                "originalAmount": self.original_amount_cents,
                "newAmount": self.new_amount_cents,
                "difference": self.difference_cents,
                "type": self.type,
            },
            "newPricing": pricing_to_response(self.new_pricing),
        }


def build_pricing(resolved: ResolvedSchedule, adult_count: int, child_count: int) -> dict[str, Any]:
    """Booking.pricing snapshot for the given schedule and counts."""
    adult_total = resolved.adult_price_cents * adult_count
    child_total = resolved.children_price_cents * child_count
    return {
        "adult_price_cents": resolved.adult_price_cents,
        "children_price_cents": resolved.children_price_cents,
        "adult_total_cents": adult_total,
        "child_total_cents": child_total,
        "total_amount_cents": adult_total + child_total,
        "currency": resolved.currency,
    }


def pricing_to_response(pricing: dict[str, Any]) -> dict[str, Any]:
    return {
        "adultPrice": pricing.get("adult_price_cents"),
        "childrenPrice": pricing.get("children_price_cents"),
        "adultTotal": pricing.get("adult_total_cents"),
        "childTotal": pricing.get("child_total_cents"),
        "totalAmount": pricing.get("total_amount_cents"),
        "currency": pricing.get("currency"),
    }


def validate_guest_counts(edit: EditBookingData, resolved: ResolvedSchedule) -> None:
    """Raise InvalidGuestCount unless the counts are bookable for this product."""
    if edit.adult_count < 0 or edit.child_count < 0:
        raise InvalidGuestCount("Guest counts cannot be negative")
    if edit.total_guests <= 0:
        raise InvalidGuestCount("At least one guest is required")
    if edit.total_guests < resolved.min_guests:
        raise InvalidGuestCount(
            f"This booking requires at least {resolved.min_guests} guests"
        )
    if resolved.max_guests is not None and edit.total_guests > int(resolved.max_guests):
        raise InvalidGuestCount(
            f"This booking allows at most {resolved.max_guests} guests"
        )


def classify_difference(difference_cents: int) -> DifferenceType:
    if abs(difference_cents) < ROUNDING_THRESHOLD_CENTS:
        return "none"
    return "upcharge" if difference_cents > 0 else "refund"


def stored_total_cents(booking: dict[str, Any]) -> int:
    """Total the customer was charged, from the booking's pricing snapshot."""
    pricing = booking.get("pricing") or {}
    return int(pricing.get("total_amount_cents") or 0)


def calculate_price_difference(
    booking: dict[str, Any],
    edit: EditBookingData,
    resolved: ResolvedSchedule,
) -> PriceDifference:
    """Price the requested change and compare it with the stored total.

    Args:
        booking: Booking dict with a pricing snapshot.
        edit: Requested change.
        resolved: Schedule and pickup prices for the change.

    Returns:
        PriceDifference with type upcharge, refund or none.

    Raises:
        InvalidGuestCount: If the counts are not bookable.
    """
    validate_guest_counts(edit, resolved)

    new_pricing = build_pricing(resolved, edit.adult_count, edit.child_count)
    original = stored_total_cents(booking)
    new_amount = new_pricing["total_amount_cents"]
    difference = new_amount - original

    return PriceDifference(
        original_amount_cents=original,
        new_amount_cents=new_amount,
        difference_cents=difference,
        type=classify_difference(difference),
        new_pricing=new_pricing,
    )
