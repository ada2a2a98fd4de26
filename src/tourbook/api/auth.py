"""OIDC JWT authentication for customer and staff sessions.

Provides:
- verify_token(): Validates a session JWT and returns its subject claim
- get_current_user(): FastAPI dependency resolving the caller's user record
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any

import jwt
import requests
from fastapi import Depends, HTTPException, Request

# JWKS cache with TTL
_jwks_cache: dict[str, Any] | None = None
_jwks_cache_time: float = 0
_jwks_cache_lock = threading.Lock()
_JWKS_CACHE_TTL = 600  # 10 minutes


@dataclass
class CurrentUser:
    """Authenticated caller."""

    id: str
    external_subject: str
    email: str | None
    name: str | None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _get_settings() -> dict[str, str | list[str] | None]:
    """Load OIDC settings from environment."""
    raw_parties = os.environ.get("OIDC_AUTHORIZED_PARTIES", "")
    parties = [p.strip() for p in raw_parties.split(",") if p.strip()] or None

    return {
        "issuer": os.environ.get("OIDC_ISSUER"),
        "audience": os.environ.get("OIDC_AUDIENCE"),
        "jwks_url": os.environ.get("OIDC_JWKS_URL"),
        "authorized_parties": parties,
    }


def _unauthorized(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def _fetch_jwks(jwks_url: str) -> dict[str, Any]:
    """Fetch JWKS from URL."""
    resp = requests.get(jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _get_jwks(jwks_url: str, force_refresh: bool = False) -> dict[str, Any]:
    """Get JWKS with caching."""
    global _jwks_cache, _jwks_cache_time

    with _jwks_cache_lock:
        now = time.time()
        fresh = _jwks_cache is not None and (now - _jwks_cache_time) < _JWKS_CACHE_TTL
        if fresh and not force_refresh:
            return _jwks_cache

        try:
            _jwks_cache = _fetch_jwks(jwks_url)
        except requests.RequestException:
            raise HTTPException(status_code=503, detail="Auth temporarily unavailable")
        _jwks_cache_time = now
        return _jwks_cache


def _find_key(jwks: dict[str, Any], kid: str) -> dict[str, Any] | None:
    """Find key by kid in JWKS."""
    return next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)


def _key_for(jwks_url: str, kid: str, *, refresh: bool) -> dict[str, Any]:
    key_data = _find_key(_get_jwks(jwks_url, force_refresh=refresh), kid)
    if key_data is None and not refresh:
        # Unknown kid: keys may have rotated since the last fetch
        key_data = _find_key(_get_jwks(jwks_url, force_refresh=True), kid)
    if key_data is None:
        raise _unauthorized()
    return key_data


def _decode(token: str, key_data: dict[str, Any], issuer: str, audience: str) -> dict[str, Any]:
    try:
        public_key = jwt.algorithms.RSAAlgorithm.from_jwk(key_data)
    except Exception:
        raise _unauthorized()

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        issuer=issuer,
        audience=audience,
        options={"require": ["exp", "iss", "aud", "sub"]},
    )


def verify_token(token: str) -> str:
    """Verify a session JWT and return its subject claim.

    Args:
        token: JWT token string.

    Returns:
        Subject claim (sub) from the token.

    Raises:
        HTTPException: 401 if the token is invalid or OIDC is not configured,
            503 if the signing keys cannot be fetched.
    """
    settings = _get_settings()
    issuer = settings.get("issuer")
    audience = settings.get("audience")
    jwks_url = settings.get("jwks_url")

    if not issuer or not audience or not jwks_url:
        raise _unauthorized("OIDC not configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.exceptions.DecodeError:
        raise _unauthorized()
    if not kid:
        raise _unauthorized()

    try:
        try:
            payload = _decode(token, _key_for(jwks_url, kid, refresh=False), issuer, audience)
        except jwt.InvalidSignatureError:
            # Stale key under the same kid, refetch once
            payload = _decode(token, _key_for(jwks_url, kid, refresh=True), issuer, audience)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized()

    parties = settings.get("authorized_parties")
    if parties and "azp" in payload and payload["azp"] not in parties:
        raise _unauthorized()

    sub = payload.get("sub")
    if not sub:
        raise _unauthorized()
    return sub


def _extract_bearer_token(request: Request) -> str:
    """Extract Bearer token from Authorization header.

    Raises:
        HTTPException: 401 if header missing or malformed.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise _unauthorized("Authentication required")

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization header")

    return parts[1]


def _get_user_from_db(external_subject: str) -> CurrentUser | None:
    """Lookup user by external_subject.

    Args:
        external_subject: OIDC sub claim.

    Returns:
        CurrentUser if found, None otherwise.
    """
    from tourbook.infra.db import fetchone_dict, txn

    with txn() as cur:
        row = fetchone_dict(
            cur,
            "SELECT id, external_subject, email, name, role FROM users WHERE external_subject = %s",
            (external_subject,),
        )
    if row is None:
        return None
    return CurrentUser(
        id=str(row["id"]),
        external_subject=row["external_subject"],
        email=row["email"],
        name=row["name"],
        role=row["role"] or "customer",
    )


def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: get authenticated user.

    Raises:
        HTTPException: 401 if the token is missing or invalid, or the
            subject has no user record.
    """
    sub = verify_token(_extract_bearer_token(request))

    user = _get_user_from_db(sub)
    if user is None:
        raise _unauthorized("Authentication required")

    return user
