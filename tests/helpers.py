"""Shared test helper functions for Tourbook tests.

Plain functions (not fixtures) importable from conftest.py and test modules.
"""

from __future__ import annotations

import base64
import time
from datetime import datetime, timezone
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

OIDC_ENV = {
    "OIDC_ISSUER": "https://auth.example.com",
    "OIDC_AUDIENCE": "tourbook-api",
    "OIDC_JWKS_URL": "https://auth.example.com/.well-known/jwks.json",
}


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    public_key = private_key.public_key()
    return private_key, public_key


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return (
            base64.urlsafe_b64encode(n.to_bytes(byte_length, "big"))
            .rstrip(b"=")
            .decode()
        )

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(public_numbers.n),
                "e": int_to_base64(public_numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = "https://auth.example.com",
    aud: str = "tourbook-api",
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        payload["azp"] = azp

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_event_booking(**overrides: Any) -> dict[str, Any]:
    """Stored event booking row as returned by bookings_repository."""
    booking = {
        "id": "b-1",
        "booking_type": "event",
        "booking_reference": "EVT-0001",
        "status": "confirmed",
        "user": "u-1",
        "booked_by": None,
        "parent_id": "e-1",
        "event_id": "e-1",
        "schedule_id": "s-1",
        "adult_count": 2,
        "child_count": 1,
        "pickup_details": {
            "pickup_location_id": "p-1",
            "pickup_location_name": "Harbour",
            "pickup_time_id": "pt-1",
            "service_time": "2026-11-01T10:00:00+00:00",
        },
        "pricing": {
            "adult_price_cents": 5000,
            "children_price_cents": 2500,
            "adult_total_cents": 10000,
            "child_total_cents": 2500,
            "total_amount_cents": 12500,
            "currency": "USD",
        },
        "review_followup": None,
        "notes": None,
        "version": 3,
        "updated_at": utc(2026, 10, 1, 9, 0),
    }
    booking.update(overrides)
    return booking
