"""Bookings repository - event and tour bookings.

Uses raw SQL with psycopg2 (no ORM). Event and tour bookings live in
separate tables with the same shape apart from the schedule columns.
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchone_dict

_TABLES = {"event": "event_bookings", "tour": "tour_bookings"}

# (parent column, schedule column) per booking type
_SCHEDULE_COLUMNS = {
    "event": ("event_id", "schedule_id"),
    "tour": ("tour_id", "scheduled_date"),
}


def _table(booking_type: str) -> str:
    try:
        return _TABLES[booking_type]
    except KeyError:
        raise ValueError(f"unknown booking type: {booking_type}") from None


def get_booking(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    expand_users: bool = False,
) -> dict[str, Any] | None:
    """Fetch a booking by id.

    Args:
        cur: Database cursor.
        booking_type: "event" or "tour".
        booking_id: Booking UUID.
        expand_users: If True, "user" and "booked_by" hold user dicts;
                      otherwise they hold bare user ids.

    Returns:
        Booking dict or None if not found.
    """
    table = _table(booking_type)
    parent_col, schedule_col = _SCHEDULE_COLUMNS[booking_type]

    user_columns = ""
    user_joins = ""
    if expand_users:
        user_columns = """,
               u.email AS user_email, u.name AS user_name, u.role AS user_role,
               u.stripe_customer_id AS user_stripe_customer_id,
               bb.email AS booked_by_email, bb.name AS booked_by_name"""
        user_joins = """
        LEFT JOIN users u ON u.id = b.user_id
        LEFT JOIN users bb ON bb.id = b.booked_by_id"""

    row = fetchone_dict(
        cur,
        f"""
        SELECT b.id, b.booking_reference, b.status, b.user_id, b.booked_by_id,
               b.{parent_col} AS parent_id, b.{schedule_col},
               b.adult_count, b.child_count, b.pickup_details, b.pricing,
               b.review_followup, b.notes, b.version, b.created_at, b.updated_at{user_columns}
        FROM {table} b{user_joins}
        WHERE b.id = %s
        """,
        (booking_id,),
    )
    if row is None:
        return None
    return _to_booking(row, booking_type, expand_users)


def _to_booking(row: dict[str, Any], booking_type: str, expand_users: bool) -> dict[str, Any]:
    parent_col, schedule_col = _SCHEDULE_COLUMNS[booking_type]
    booking = {
        "id": str(row["id"]),
        "booking_type": booking_type,
        "booking_reference": row["booking_reference"],
        "status": row["status"],
        "parent_id": str(row["parent_id"]) if row["parent_id"] is not None else None,
        parent_col: str(row["parent_id"]) if row["parent_id"] is not None else None,
        schedule_col: row[schedule_col],
        "adult_count": row["adult_count"],
        "child_count": row["child_count"],
        "pickup_details": row["pickup_details"] or {},
        "pricing": row["pricing"] or {},
        "review_followup": row["review_followup"] or {},
        "notes": row["notes"],
        "version": row["version"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if booking_type == "event" and booking["schedule_id"] is not None:
        booking["schedule_id"] = str(booking["schedule_id"])

    user_id = str(row["user_id"]) if row["user_id"] is not None else None
    booked_by_id = str(row["booked_by_id"]) if row["booked_by_id"] is not None else None

    if expand_users and user_id and row.get("user_email") is not None:
        booking["user"] = {
            "id": user_id,
            "email": row["user_email"],
            "name": row["user_name"],
            "role": row["user_role"],
            "stripe_customer_id": row["user_stripe_customer_id"],
        }
    else:
        booking["user"] = user_id

    if expand_users and booked_by_id and row.get("booked_by_email") is not None:
        booking["booked_by"] = {
            "id": booked_by_id,
            "email": row["booked_by_email"],
            "name": row["booked_by_name"],
        }
    else:
        booking["booked_by"] = booked_by_id

    return booking


def update_booking_details(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    expected_version: int,
    parent_id: str,
    schedule_value: Any,
    adult_count: int,
    child_count: int,
    pickup_details: dict[str, Any],
    pricing: dict[str, Any],
    note: str,
) -> dict[str, Any] | None:
    """Write an edit if the booking is still at expected_version.

    Appends note to the booking's notes and bumps version.

    Returns:
        Dict with the new version and updated_at, or None when the version
        no longer matches (concurrent modification) or the booking has
        become cancelled/completed meanwhile.
    """
    table = _table(booking_type)
    parent_col, schedule_col = _SCHEDULE_COLUMNS[booking_type]

    return fetchone_dict(
        cur,
        f"""
        UPDATE {table}
        SET {parent_col} = %s,
            {schedule_col} = %s,
            adult_count = %s,
            child_count = %s,
            pickup_details = %s::jsonb,
            pricing = %s::jsonb,
            notes = CASE
                WHEN notes IS NULL OR notes = '' THEN %s
                ELSE notes || E'\\n' || %s
            END,
            version = version + 1,
            updated_at = now()
        WHERE id = %s
          AND version = %s
          AND status NOT IN ('cancelled', 'completed')
        RETURNING version, updated_at
        """,
        (
            parent_id,
            schedule_value,
            adult_count,
            child_count,
            json.dumps(pickup_details, default=str),
            json.dumps(pricing),
            note,
            note,
            booking_id,
            expected_version,
        ),
    )


def cancel_booking(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    expected_version: int,
    note: str,
) -> dict[str, Any] | None:
    """Mark the booking cancelled if it is still at expected_version.

    Returns:
        Dict with the new version and updated_at, or None when the version
        no longer matches or the booking is already cancelled/completed.
    """
    table = _table(booking_type)
    return fetchone_dict(
        cur,
        f"""
        UPDATE {table}
        SET status = 'cancelled',
            notes = CASE
                WHEN notes IS NULL OR notes = '' THEN %s
                ELSE notes || E'\\n' || %s
            END,
            version = version + 1,
            updated_at = now()
        WHERE id = %s
          AND version = %s
          AND status NOT IN ('cancelled', 'completed')
        RETURNING version, updated_at
        """,
        (note, note, booking_id, expected_version),
    )


def set_review_followup(
    cur: PgCursor,
    booking_type: str,
    booking_id: str,
    *,
    followup_date: str,
) -> None:
    """Record the rescheduled review follow-up date on the booking."""
    table = _table(booking_type)
    cur.execute(
        f"""
        UPDATE {table}
        SET review_followup = COALESCE(review_followup, '{{}}'::jsonb)
                || jsonb_build_object('followup_date', %s::text),
            updated_at = now()
        WHERE id = %s
        """,
        (followup_date, booking_id),
    )
