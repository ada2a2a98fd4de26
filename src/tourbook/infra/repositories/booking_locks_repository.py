"""Booking edit locks - a short per-booking lease held across the money step.

Row locks cannot be held across a payment gateway call (transactions stay
short), so the lease is a row with an owner token and an expiry.
"""

from __future__ import annotations

from psycopg2.extensions import cursor as PgCursor


def acquire_lock(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    lock_token: str,
    ttl_seconds: int,
) -> bool:
    """Take the lease unless another live holder has it.

    An expired lease is taken over.

    Returns:
        True if lock_token now holds the lease.
    """
    cur.execute(
        """
        INSERT INTO booking_edit_locks (booking_type, booking_id, lock_token, expires_at)
        VALUES (%s, %s, %s, now() + make_interval(secs => %s))
        ON CONFLICT (booking_type, booking_id) DO UPDATE
        SET lock_token = EXCLUDED.lock_token,
            expires_at = EXCLUDED.expires_at
        WHERE booking_edit_locks.expires_at < now()
        RETURNING lock_token
        """,
        (booking_type, booking_id, lock_token, ttl_seconds),
    )
    row = cur.fetchone()
    return row is not None and str(row[0]) == lock_token


def release_lock(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    lock_token: str,
) -> None:
    """Release the lease if lock_token still holds it."""
    cur.execute(
        """
        DELETE FROM booking_edit_locks
        WHERE booking_type = %s AND booking_id = %s AND lock_token = %s
        """,
        (booking_type, booking_id, lock_token),
    )
