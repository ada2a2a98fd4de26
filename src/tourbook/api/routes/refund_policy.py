"""Refund policy endpoints for staff.

GET: read the effective refund tiers (database, env or default)
PUT: replace the tiers stored in the database (admin)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from tourbook.api.auth import CurrentUser
from tourbook.api.rbac import require_role
from tourbook.domain.refunds import load_refund_policy, validate_tiers
from tourbook.infra.repositories import refund_policy_repository
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

router = APIRouter(tags=["refund-policy"])

logger = get_logger(__name__)


# ── Schemas ───────────────────────────────────────────────


class RefundTierIn(BaseModel):
    min_hours_before_service: float
    refund_percent: int


class PutRefundPolicyRequest(BaseModel):
    tiers: list[RefundTierIn] = Field(..., min_length=1)


# ── GET /refund-policy ───────────────────────────────────


@router.get("/refund-policy")
def get_refund_policy(
    user: CurrentUser = Depends(require_role("agent")),
) -> dict:
    """Return the effective refund policy and where it came from."""
    policy = load_refund_policy()
    return {"source": policy.source, "tiers": policy.to_dicts()}


# ── PUT /refund-policy ───────────────────────────────────


@router.put("/refund-policy")
def put_refund_policy(
    body: PutRefundPolicyRequest,
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    """Replace the stored refund tiers."""
    from tourbook.infra.db import txn

    tiers = [tier.model_dump() for tier in body.tiers]
    try:
        validate_tiers(tiers)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with txn() as cur:
        refund_policy_repository.replace_tiers(cur, tiers)

    logger.info(
        "refund policy replaced",
        extra={"extra_fields": safe_log_context(user_id=user.id, tier_count=len(tiers))},
    )

    policy = load_refund_policy()
    return {"source": policy.source, "tiers": policy.to_dicts()}
