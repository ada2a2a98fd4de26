"""Booking payments repository - persistence for Stripe-backed payments.

Uses raw SQL with psycopg2 (no ORM). Amounts are cents. Every refund
mutation keeps refunded_amount_cents within [0, amount_cents].
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchall_dicts, fetchone_dict

_TABLES = {"event": "event_booking_payments", "tour": "tour_booking_payments"}

_COLUMNS = """
    id, payment_reference, booking_id, user_id, amount_cents, currency,
    payment_status, payment_type, stripe_payment_intent_id, stripe_customer_id,
    refund_status, refunded_amount_cents, stripe_refund_id, notes,
    created_at, updated_at
"""


def _table(booking_type: str) -> str:
    try:
        return _TABLES[booking_type]
    except KeyError:
        raise ValueError(f"unknown booking type: {booking_type}") from None


def _normalize(row: dict[str, Any]) -> dict[str, Any]:
    row["id"] = str(row["id"])
    row["booking_id"] = str(row["booking_id"])
    if row.get("user_id") is not None:
        row["user_id"] = str(row["user_id"])
    return row


def list_completed_payments(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
) -> list[dict[str, Any]]:
    """Completed payments for a booking, oldest first.

    Order is (created_at, id) so refund allocation is deterministic.
    """
    rows = fetchall_dicts(
        cur,
        f"""
        SELECT {_COLUMNS}
        FROM {_table(booking_type)}
        WHERE booking_id = %s AND payment_status = 'completed'
        ORDER BY created_at ASC, id ASC
        """,
        (booking_id,),
    )
    return [_normalize(r) for r in rows]


def get_payment(cur: PgCursor, booking_type: str, payment_id: str) -> dict[str, Any] | None:
    row = fetchone_dict(
        cur,
        f"SELECT {_COLUMNS} FROM {_table(booking_type)} WHERE id = %s",
        (payment_id,),
    )
    return _normalize(row) if row else None


def find_payment_by_intent(
    cur: PgCursor,
    payment_intent_id: str,
) -> tuple[str, dict[str, Any]] | None:
    """Locate a payment by Stripe PaymentIntent id across both booking types.

    Returns:
        (booking_type, payment dict) or None if no payment references it.
    """
    for booking_type, table in _TABLES.items():
        row = fetchone_dict(
            cur,
            f"SELECT {_COLUMNS} FROM {table} WHERE stripe_payment_intent_id = %s",
            (payment_intent_id,),
        )
        if row is not None:
            return booking_type, _normalize(row)
    return None


def insert_payment(
    cur: PgCursor,
    booking_type: str,
    *,
    booking_id: str,
    user_id: str | None,
    amount_cents: int,
    currency: str,
    payment_type: str,
    payment_reference: str,
    stripe_payment_intent_id: str,
    stripe_customer_id: str | None,
    notes: str | None = None,
) -> str:
    """Insert a pending payment record.

    Returns:
        UUID string of the created payment.
    """
    cur.execute(
        f"""
        INSERT INTO {_table(booking_type)} (
            payment_reference, booking_id, user_id, amount_cents, currency,
            payment_status, payment_type, stripe_payment_intent_id,
            stripe_customer_id, refund_status, refunded_amount_cents, notes
        )
        VALUES (%s, %s, %s, %s, %s, 'pending', %s, %s, %s, 'not_refunded', 0, %s)
        RETURNING id
        """,
        (
            payment_reference,
            booking_id,
            user_id,
            amount_cents,
            currency,
            payment_type,
            stripe_payment_intent_id,
            stripe_customer_id,
            notes,
        ),
    )
    row = cur.fetchone()
    return str(row[0])


def update_payment_status(
    cur: PgCursor,
    booking_type: str,
    payment_id: str,
    status: str,
) -> bool:
    """Move a pending payment to completed or failed.

    Returns:
        True if the row changed, False if it was not pending.
    """
    cur.execute(
        f"""
        UPDATE {_table(booking_type)}
        SET payment_status = %s, updated_at = now()
        WHERE id = %s AND payment_status = 'pending'
        """,
        (status, payment_id),
    )
    return cur.rowcount > 0


def mark_refund_pending(cur: PgCursor, booking_type: str, payment_id: str) -> bool:
    """Flag a payment as having a refund in flight.

    Returns:
        False when a refund is already pending on it.
    """
    cur.execute(
        f"""
        UPDATE {_table(booking_type)}
        SET refund_status = 'pending', updated_at = now()
        WHERE id = %s AND refund_status <> 'pending'
        """,
        (payment_id,),
    )
    return cur.rowcount > 0


def record_refund(
    cur: PgCursor,
    booking_type: str,
    payment_id: str,
    *,
    amount_cents: int,
    refund_status: str,
    stripe_refund_id: str,
    note: str,
) -> None:
    """Apply an accepted gateway refund to the payment.

    refund_status is "refunded" when Stripe confirmed it, or "pending" while
    Stripe is still processing (the amount is reserved either way).
    """
    cur.execute(
        f"""
        UPDATE {_table(booking_type)}
        SET refund_status = %s,
            refunded_amount_cents = LEAST(amount_cents, refunded_amount_cents + %s),
            stripe_refund_id = %s,
            notes = CASE
                WHEN notes IS NULL OR notes = '' THEN %s
                ELSE notes || E'\\n' || %s
            END,
            updated_at = now()
        WHERE id = %s
        """,
        (refund_status, amount_cents, stripe_refund_id, note, note, payment_id),
    )


def mark_refunds_failed(
    cur: PgCursor,
    booking_type: str,
    payment_ids: list[str],
    *,
    note: str,
) -> int:
    """Mark payments whose refund was not confirmed as failed.

    Only payments still pending are changed.

    Returns:
        Number of payments updated.
    """
    if not payment_ids:
        return 0
    cur.execute(
        f"""
        UPDATE {_table(booking_type)}
        SET refund_status = 'failed',
            notes = CASE
                WHEN notes IS NULL OR notes = '' THEN %s
                ELSE notes || E'\\n' || %s
            END,
            updated_at = now()
        WHERE id = ANY(%s::uuid[])
          AND refund_status = 'pending'
        """,
        (note, note, payment_ids),
    )
    return cur.rowcount


def apply_refund_outcome(
    cur: PgCursor,
    booking_type: str,
    payment_id: str,
    *,
    refund_status: str,
    release_cents: int = 0,
) -> None:
    """Settle a refund reported by the gateway webhook.

    release_cents gives back a reserved amount when a pending refund failed.
    """
    cur.execute(
        f"""
        UPDATE {_table(booking_type)}
        SET refund_status = %s,
            refunded_amount_cents = GREATEST(0, refunded_amount_cents - %s),
            updated_at = now()
        WHERE id = %s
        """,
        (refund_status, release_cents, payment_id),
    )
