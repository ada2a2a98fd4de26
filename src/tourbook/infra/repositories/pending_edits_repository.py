"""Pending edits repository - server-side record of an upcharge edit awaiting payment.

The edit data and new pricing are stored when the PaymentIntent is created
so the confirming request cannot swap in different edit data.
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchone_dict


def insert_pending_edit(
    cur: PgCursor,
    *,
    booking_type: str,
    booking_id: str,
    payment_id: str,
    payment_intent_id: str,
    edit_data: dict[str, Any],
    original_amount_cents: int,
    new_pricing: dict[str, Any],
    booking_version: int,
    ttl_minutes: int,
) -> str:
    """Store a pending edit.

    Returns:
        The pending edit token (UUID string).
    """
    cur.execute(
        """
        INSERT INTO pending_edits (
            booking_type, booking_id, payment_id, payment_intent_id,
            edit_data, original_amount_cents, new_pricing, booking_version,
            expires_at
        )
        VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s,
                now() + make_interval(mins => %s))
        RETURNING token
        """,
        (
            booking_type,
            booking_id,
            payment_id,
            payment_intent_id,
            json.dumps(edit_data),
            original_amount_cents,
            json.dumps(new_pricing),
            booking_version,
            ttl_minutes,
        ),
    )
    row = cur.fetchone()
    return str(row[0])


def get_pending_edit(cur: PgCursor, token: str) -> dict[str, Any] | None:
    """Fetch a pending edit by token, with an is_expired flag computed in SQL."""
    row = fetchone_dict(
        cur,
        """
        SELECT token, booking_type, booking_id, payment_id, payment_intent_id,
               edit_data, original_amount_cents, new_pricing, booking_version,
               expires_at, consumed_at, expires_at < now() AS is_expired
        FROM pending_edits
        WHERE token = %s
        """,
        (token,),
    )
    if row is None:
        return None
    row["token"] = str(row["token"])
    row["booking_id"] = str(row["booking_id"])
    row["payment_id"] = str(row["payment_id"])
    return row


def consume_pending_edit(cur: PgCursor, token: str) -> bool:
    """Mark a pending edit as used.

    Returns:
        False if it was already consumed.
    """
    cur.execute(
        """
        UPDATE pending_edits
        SET consumed_at = now()
        WHERE token = %s AND consumed_at IS NULL
        """,
        (token,),
    )
    return cur.rowcount > 0
