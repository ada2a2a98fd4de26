"""Relationship references.

A relationship field on a stored record is either a bare identifier or the
expanded related record, depending on how it was loaded. Code reading
relationships goes through resolve_id instead of checking the shape inline.
"""

from __future__ import annotations

from typing import Any, Mapping, Union
from uuid import UUID

Reference = Union[str, int, UUID, Mapping[str, Any], None]


def resolve_id(ref: Reference) -> str | None:
    """Return the identifier behind a reference, or None if unset.

    Examples:
        resolve_id("u-1") -> "u-1"
        resolve_id({"id": "u-1", "email": ...}) -> "u-1"
        resolve_id(None) -> None
    """
    if ref is None:
        return None
    if isinstance(ref, Mapping):
        inner = ref.get("id")
        return str(inner) if inner is not None else None
    if isinstance(ref, bool):
        raise TypeError("boolean is not a valid reference")
    if isinstance(ref, (str, int, UUID)):
        value = str(ref)
        return value or None
    raise TypeError(f"unsupported reference type: {type(ref).__name__}")


def is_expanded(ref: Reference) -> bool:
    """True when the reference holds the related record itself."""
    return isinstance(ref, Mapping)
