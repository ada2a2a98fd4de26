"""Outbox repository - events recorded in the same transaction as the change.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor

BOOKING_UPDATED = "BOOKING_UPDATED"


def emit_event(
    cur: PgCursor,
    *,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Emit an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        event_type: Event type (e.g., BOOKING_UPDATED).
        aggregate_type: Aggregate type (e.g., event_booking).
        aggregate_id: Aggregate ID (e.g., booking UUID).
        payload: Optional JSON payload (no PII).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            event_type, aggregate_type, aggregate_id, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (event_type, aggregate_type, aggregate_id, payload_json, correlation_id),
    )
    return cur.fetchone()[0]


def emit_booking_updated(
    cur: PgCursor,
    *,
    booking_type: str,
    booking_id: str,
    change_type: str,
    version: int,
    refund_amount_cents: int = 0,
    upcharge_amount_cents: int = 0,
    correlation_id: str | None = None,
) -> int:
    """Emit BOOKING_UPDATED for a committed edit.

    Returns:
        The generated event ID.
    """
    return emit_event(
        cur,
        event_type=BOOKING_UPDATED,
        aggregate_type=f"{booking_type}_booking",
        aggregate_id=booking_id,
        payload={
            "booking_type": booking_type,
            "booking_id": booking_id,
            "change_type": change_type,
            "version": version,
            "refund_amount_cents": refund_amount_cents,
            "upcharge_amount_cents": upcharge_amount_cents,
        },
        correlation_id=correlation_id,
    )
