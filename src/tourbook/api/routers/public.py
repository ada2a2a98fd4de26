"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from tourbook.api.routes import booking_edits, refund_policy, webhooks_stripe

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(booking_edits.router)
router.include_router(refund_policy.router)
router.include_router(webhooks_stripe.router)
