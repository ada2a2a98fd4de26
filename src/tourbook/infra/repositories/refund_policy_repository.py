"""Refund policy repository - tiers of refund percentage by notice period.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def list_tiers(cur: PgCursor) -> list[dict[str, Any]]:
    """Configured tiers, largest notice period first (empty if unconfigured)."""
    cur.execute(
        """
        SELECT min_hours_before_service, refund_percent
        FROM refund_policy_tiers
        ORDER BY min_hours_before_service DESC
        """
    )
    return [
        {"min_hours_before_service": float(row[0]), "refund_percent": row[1]}
        for row in cur.fetchall()
    ]


def replace_tiers(cur: PgCursor, tiers: list[dict[str, Any]]) -> None:
    """Replace the whole policy with the given tiers (same transaction)."""
    cur.execute("DELETE FROM refund_policy_tiers")
    for tier in tiers:
        cur.execute(
            """
            INSERT INTO refund_policy_tiers (min_hours_before_service, refund_percent)
            VALUES (%s, %s)
            """,
            (tier["min_hours_before_service"], tier["refund_percent"]),
        )
