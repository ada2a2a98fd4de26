"""Catalog repository - read-only access to events, tours and their pickups.

Returns nested dicts in the shapes documented in tourbook.domain.schedules.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tourbook.infra.db import fetchall_dicts, fetchone_dict


def get_event(cur: PgCursor, event_id: str) -> dict[str, Any] | None:
    """Load an event with its schedules, pickups and pickup times."""
    event = fetchone_dict(
        cur,
        "SELECT id, name, currency, min_guests, max_guests FROM events WHERE id = %s",
        (event_id,),
    )
    if event is None:
        return None

    schedules = fetchall_dicts(
        cur,
        """
        SELECT id, event_date_time
        FROM event_schedules
        WHERE event_id = %s
        ORDER BY event_date_time
        """,
        (event_id,),
    )
    pickups = fetchall_dicts(
        cur,
        """
        SELECT p.id, p.schedule_id, p.name, p.adult_price_cents, p.children_price_cents
        FROM event_pickups p
        JOIN event_schedules s ON s.id = p.schedule_id
        WHERE s.event_id = %s
        ORDER BY p.name
        """,
        (event_id,),
    )
    times = fetchall_dicts(
        cur,
        """
        SELECT t.id, t.pickup_id, t.pickup_at
        FROM event_pickup_times t
        JOIN event_pickups p ON p.id = t.pickup_id
        JOIN event_schedules s ON s.id = p.schedule_id
        WHERE s.event_id = %s
        ORDER BY t.pickup_at
        """,
        (event_id,),
    )

    times_by_pickup: dict[str, list[dict[str, Any]]] = {}
    for t in times:
        times_by_pickup.setdefault(str(t["pickup_id"]), []).append(
            {"id": str(t["id"]), "pickup_at": t["pickup_at"]}
        )

    pickups_by_schedule: dict[str, list[dict[str, Any]]] = {}
    for p in pickups:
        pickup_id = str(p["id"])
        pickups_by_schedule.setdefault(str(p["schedule_id"]), []).append(
            {
                "id": pickup_id,
                "name": p["name"],
                "adult_price_cents": p["adult_price_cents"],
                "children_price_cents": p["children_price_cents"],
                "pickup_times": times_by_pickup.get(pickup_id, []),
            }
        )

    event["id"] = str(event["id"])
    event["schedules"] = [
        {
            "id": str(s["id"]),
            "event_date_time": s["event_date_time"],
            "pickups": pickups_by_schedule.get(str(s["id"]), []),
        }
        for s in schedules
    ]
    return event


def get_tour(cur: PgCursor, tour_id: str) -> dict[str, Any] | None:
    """Load a tour with its recurrence settings and hotel pickups."""
    tour = fetchone_dict(
        cur,
        """
        SELECT id, name, currency, min_guests, max_guests, start_time,
               weekdays, booking_window_days, blackout_dates
        FROM tours
        WHERE id = %s
        """,
        (tour_id,),
    )
    if tour is None:
        return None

    pickups = fetchall_dicts(
        cur,
        """
        SELECT hotel_id, name, adult_price_cents, children_price_cents, pickup_time
        FROM tour_pickups
        WHERE tour_id = %s
        ORDER BY name
        """,
        (tour_id,),
    )

    tour["id"] = str(tour["id"])
    tour["weekdays"] = list(tour["weekdays"] or [])
    tour["blackout_dates"] = list(tour["blackout_dates"] or [])
    tour["pickups"] = [dict(p, hotel_id=str(p["hotel_id"])) for p in pickups]
    return tour


def get_parent(cur: PgCursor, booking_type: str, parent_id: str | None) -> dict[str, Any] | None:
    """Load the event or tour a booking (or edit) refers to."""
    if not parent_id:
        return None
    if booking_type == "event":
        return get_event(cur, parent_id)
    return get_tour(cur, parent_id)
