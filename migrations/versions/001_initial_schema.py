"""Booking edit schema (SQL-only).

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

_TABLES = (
    "processed_events",
    "outbox_events",
    "booking_edit_locks",
    "pending_edits",
    "refund_policy_tiers",
    "booking_refunds",
    "tour_booking_payments",
    "event_booking_payments",
    "tour_bookings",
    "event_bookings",
    "tour_pickups",
    "tours",
    "event_pickup_times",
    "event_pickups",
    "event_schedules",
    "events",
    "users",
)


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_initial_schema.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    conn = op.get_bind()
    for table in _TABLES:
        conn.exec_driver_sql(f"DROP TABLE IF EXISTS {table}")
