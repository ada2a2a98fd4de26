"""Hashing utilities for deterministic idempotency keys."""

import hashlib
import json
from typing import Any


def fingerprint(data: Any, length: int = 16) -> str:
    """Stable short hash of JSON-serializable data.

    Key order does not matter; the same data always yields the same value,
    so it is safe to embed in gateway idempotency keys and task ids.

    Args:
        data: JSON-serializable value.
        length: Number of hex characters to keep.

    Returns:
        Lowercase hex digest prefix.
    """
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:length]
