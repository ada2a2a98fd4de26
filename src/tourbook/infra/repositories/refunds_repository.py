"""Refunds repository - ledger of gateway refunds issued for booking edits.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchone_dict


def insert_refund(
    cur: PgCursor,
    *,
    booking_type: str,
    booking_id: str,
    payment_id: str,
    stripe_refund_id: str,
    amount_cents: int,
    percentage: int,
    reason: str,
    status: str,
) -> str:
    """Insert a refund ledger row.

    Idempotent on stripe_refund_id: a retried request that got the same
    refund back from Stripe does not create a second row.

    Returns:
        UUID string of the refund row.
    """
    cur.execute(
        """
        INSERT INTO booking_refunds (
            booking_type, booking_id, payment_id, stripe_refund_id,
            amount_cents, percentage, reason, status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (stripe_refund_id) DO UPDATE SET updated_at = now()
        RETURNING id
        """,
        (
            booking_type,
            booking_id,
            payment_id,
            stripe_refund_id,
            amount_cents,
            percentage,
            reason,
            status,
        ),
    )
    row = cur.fetchone()
    return str(row[0])


def update_refund_status(
    cur: PgCursor,
    stripe_refund_id: str,
    status: str,
) -> dict[str, Any] | None:
    """Set a refund's status by its Stripe id.

    Returns:
        Dict with booking_type, booking_id, payment_id, amount_cents and
        previous_status, or None if the refund is not ours.
    """
    row = fetchone_dict(
        cur,
        """
        UPDATE booking_refunds r
        SET status = %s, updated_at = now()
        FROM (
            SELECT id, status AS previous_status
            FROM booking_refunds
            WHERE stripe_refund_id = %s
            FOR UPDATE
        ) prev
        WHERE r.id = prev.id
        RETURNING r.id, r.booking_type, r.booking_id, r.payment_id,
                  r.amount_cents, prev.previous_status
        """,
        (status, stripe_refund_id),
    )
    if row is None:
        return None
    return {
        "id": str(row["id"]),
        "booking_type": row["booking_type"],
        "booking_id": str(row["booking_id"]),
        "payment_id": str(row["payment_id"]),
        "amount_cents": row["amount_cents"],
        "previous_status": row["previous_status"],
    }