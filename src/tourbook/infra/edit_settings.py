"""Booking-edit settings.

Loaded from environment variables at the point of use so tests can patch
os.environ per case.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EditSettings:
    """Tunables for the booking-edit workflow.

    Attributes:
        min_lead_hours: Edits must leave at least this many hours before
                        the new pickup (or service) time.
        pending_edit_ttl_minutes: How long an upcharge PendingEdit stays usable.
        lock_ttl_seconds: Per-booking lease expiry, so a crashed request
                          cannot block a booking forever.
        default_currency: Currency used when a catalog entry has none.
    """

    min_lead_hours: float = 2.0
    pending_edit_ttl_minutes: int = 60
    lock_ttl_seconds: int = 120
    default_currency: str = "USD"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_edit_settings() -> EditSettings:
    """Build EditSettings from the environment, falling back to defaults."""
    defaults = EditSettings()
    return EditSettings(
        min_lead_hours=max(0.0, _env_float("EDIT_MIN_LEAD_HOURS", defaults.min_lead_hours)),
        pending_edit_ttl_minutes=_env_int(
            "PENDING_EDIT_TTL_MINUTES", defaults.pending_edit_ttl_minutes
        ),
        lock_ttl_seconds=_env_int("BOOKING_LOCK_TTL_SECONDS", defaults.lock_ttl_seconds),
        default_currency=os.environ.get("DEFAULT_CURRENCY", "").strip().upper()
        or defaults.default_currency,
    )
