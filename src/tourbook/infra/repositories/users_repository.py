"""Users repository - customer records and their Stripe customer link.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchone_dict


def get_user(cur: PgCursor, user_id: str) -> dict[str, Any] | None:
    """Fetch a user by id.

    Returns:
        Dict with id, email, name, role, stripe_customer_id or None.
    """
    row = fetchone_dict(
        cur,
        """
        SELECT id, email, name, role, stripe_customer_id
        FROM users
        WHERE id = %s
        """,
        (user_id,),
    )
    if row is None:
        return None
    row["id"] = str(row["id"])
    return row


def set_stripe_customer_id(
    cur: PgCursor,
    user_id: str,
    stripe_customer_id: str,
) -> str:
    """Link a Stripe customer to the user unless one is already linked.

    Returns:
        The customer id now stored on the user (the existing one wins if
        a concurrent request linked first).
    """
    cur.execute(
        """
        UPDATE users
        SET stripe_customer_id = COALESCE(stripe_customer_id, %s),
            updated_at = now()
        WHERE id = %s
        RETURNING stripe_customer_id
        """,
        (stripe_customer_id, user_id),
    )
    row = cur.fetchone()
    return row[0] if row else stripe_customer_id
