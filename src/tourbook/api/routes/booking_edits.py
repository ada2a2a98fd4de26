"""Booking edit endpoints for customers and staff.

POST /bookings/{type}/edit/calculate-price: price a change (read only)
POST /bookings/{type}/edit/payment: start an upcharge payment
POST /bookings/{type}/edit: apply a change (no delta, or a paid upcharge)
POST /bookings/{type}/edit/refund: apply a change and refund the decrease
POST /bookings/{type}/cancel: cancel and refund the policy share of payments

{type} is "events" or "tours". Errors are raised as BookingEditError or
HTTPException and rendered as {"error": message} by the app factory.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tourbook.api.auth import CurrentUser, get_current_user
from tourbook.domain import booking_cancel, booking_edit
from tourbook.domain.edit_data import BookingType, EditBookingData, booking_type_from_path
from tourbook.domain.pricing import pricing_to_response
from tourbook.domain.references import resolve_id
from tourbook.stripe.client import StripeClient

router = APIRouter(prefix="/bookings", tags=["booking-edits"])


# ── Schemas ───────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EditDataIn(_CamelModel):
    event_id: UUID | None = None
    tour_id: UUID | None = None
    schedule_id: str = Field(..., min_length=1)
    adult_count: int
    child_count: int = 0
    pickup_location_id: str = Field(..., min_length=1)
    pickup_time_id: str | None = None
    hotel_id: str | int | None = None

    def to_edit(self, booking_type: BookingType) -> EditBookingData:
        parent_id = self.event_id if booking_type == "event" else self.tour_id
        if not parent_id:
            field_name = "eventId" if booking_type == "event" else "tourId"
            raise HTTPException(status_code=400, detail=f"editData.{field_name} is required")
        return EditBookingData(
            booking_type=booking_type,
            parent_id=str(parent_id),
            schedule_id=self.schedule_id,
            adult_count=self.adult_count,
            child_count=self.child_count,
            pickup_location_id=self.pickup_location_id,
            pickup_time_id=self.pickup_time_id,
            hotel_id=str(self.hotel_id) if self.hotel_id is not None else None,
        )


class CalculatePriceRequest(_CamelModel):
    booking_id: UUID
    edit_data: EditDataIn


class UpchargePaymentRequest(_CamelModel):
    booking_id: UUID
    upcharge_amount: int = Field(..., description="Amount in cents")
    edit_data: EditDataIn


class ApplyEditRequest(_CamelModel):
    booking_id: UUID
    edit_data: EditDataIn
    pending_edit_token: UUID | None = None


class RefundEditRequest(_CamelModel):
    booking_id: UUID
    edit_data: EditDataIn


class CancelBookingRequest(_CamelModel):
    booking_id: UUID


# ── Helpers ───────────────────────────────────────────────


def _booking_type(segment: str) -> BookingType:
    try:
        return booking_type_from_path(segment)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")


def _get_stripe_client() -> StripeClient:
    """Stripe client for the request (allows override in tests)."""
    return StripeClient()


def booking_to_response(booking: dict[str, Any]) -> dict[str, Any]:
    """Public booking shape after an edit."""
    pickup = booking.get("pickup_details") or {}
    body: dict[str, Any] = {
        "id": booking["id"],
        "bookingReference": booking.get("booking_reference"),
        "status": booking.get("status"),
        "user": resolve_id(booking.get("user")),
        "adultCount": booking.get("adult_count"),
        "childCount": booking.get("child_count"),
        "pickupDetails": {
            "pickupLocationId": pickup.get("pickup_location_id"),
            "pickupLocationName": pickup.get("pickup_location_name"),
            "hotelId": pickup.get("hotel_id"),
            "pickupTimeId": pickup.get("pickup_time_id"),
            "pickupTime": pickup.get("pickup_time"),
            "serviceTime": pickup.get("service_time"),
        },
        "pricing": pricing_to_response(booking.get("pricing") or {}),
        "version": booking.get("version"),
    }
    if booking.get("booking_type") == "tour":
        scheduled = booking.get("scheduled_date")
        body["tourId"] = booking.get("tour_id")
        body["scheduledDate"] = scheduled.isoformat() if hasattr(scheduled, "isoformat") else scheduled
    else:
        body["eventId"] = booking.get("event_id")
        body["scheduleId"] = booking.get("schedule_id")
    updated_at = booking.get("updated_at")
    body["updatedAt"] = updated_at.isoformat() if hasattr(updated_at, "isoformat") else updated_at
    return body


# ── Endpoints ─────────────────────────────────────────────


@router.post("/{type_segment}/edit/calculate-price")
def calculate_price(
    body: CalculatePriceRequest,
    type_segment: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Price a requested change. No side effects."""
    booking_type = _booking_type(type_segment)
    diff = booking_edit.preview_edit(
        booking_type,
        str(body.booking_id),
        body.edit_data.to_edit(booking_type),
        user_id=user.id,
        role=user.role,
    )
    return diff.to_response()


@router.post("/{type_segment}/edit/payment")
def create_upcharge_payment(
    body: UpchargePaymentRequest,
    type_segment: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Start the upcharge payment for a change that costs more.

    The booking is not modified; confirm via POST /edit with the returned
    pendingEditToken once the payment succeeds.
    """
    booking_type = _booking_type(type_segment)
    result = booking_edit.create_upcharge_intent(
        booking_type,
        str(body.booking_id),
        body.edit_data.to_edit(booking_type),
        body.upcharge_amount,
        user_id=user.id,
        role=user.role,
        stripe_client=_get_stripe_client(),
    )
    return {
        "clientSecret": result["client_secret"],
        "paymentIntentId": result["payment_intent_id"],
        "paymentId": result["payment_id"],
        "upchargeAmount": result["amount_cents"],
        "pendingEditToken": result["pending_edit_token"],
    }


@router.post("/{type_segment}/edit")
def apply_booking_edit(
    body: ApplyEditRequest,
    type_segment: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Apply a change with no price increase, or a paid upcharge."""
    booking_type = _booking_type(type_segment)
    outcome = booking_edit.apply_edit(
        booking_type,
        str(body.booking_id),
        body.edit_data.to_edit(booking_type),
        user_id=user.id,
        role=user.role,
        pending_edit_token=str(body.pending_edit_token) if body.pending_edit_token else None,
    )
    return {
        "success": True,
        "message": outcome.message,
        "booking": booking_to_response(outcome.booking),
    }


@router.post("/{type_segment}/edit/refund")
def apply_booking_edit_with_refund(
    body: RefundEditRequest,
    type_segment: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Apply a change and refund the policy share of any price decrease."""
    booking_type = _booking_type(type_segment)
    outcome = booking_edit.apply_edit(
        booking_type,
        str(body.booking_id),
        body.edit_data.to_edit(booking_type),
        user_id=user.id,
        role=user.role,
    )
    if outcome.refund is None:
        return {"success": True, "message": "Booking updated successfully (no refund required)"}
    return {
        "success": True,
        "message": outcome.message,
        "refundId": outcome.refund.refund_id,
        "refundAmount": outcome.refund.amount_cents,
        "refundPercentage": outcome.refund.percentage,
    }


@router.post("/{type_segment}/cancel")
def cancel_booking(
    body: CancelBookingRequest,
    type_segment: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Cancel a booking and refund the policy share of what was paid."""
    booking_type = _booking_type(type_segment)
    outcome = booking_cancel.cancel_booking(
        booking_type,
        str(body.booking_id),
        user_id=user.id,
        role=user.role,
        stripe_client=_get_stripe_client(),
    )
    return {
        "success": True,
        "message": outcome.message,
        "refundId": outcome.refund.refund_id,
        "refundAmount": outcome.refund.amount_cents,
        "refundPercentage": outcome.refund.percentage,
    }
