"""Role checks for staff endpoints.

Role hierarchy: customer < agent < admin. The role lives on the user record,
so no extra lookup is needed beyond authentication.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException

from tourbook.api.auth import CurrentUser, get_current_user

# Role hierarchy: lower index = less privilege
ROLE_HIERARCHY = ["customer", "agent", "admin"]


def _role_level(role: str) -> int:
    """Get numeric level for role (higher = more privilege)."""
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1


def require_role(min_role: str) -> Callable[..., CurrentUser]:
    """Create a dependency that requires a minimum role.

    Usage:
        @router.put("/refund-policy")
        def endpoint(user: CurrentUser = Depends(require_role("admin"))):
            ...
    """
    min_level = _role_level(min_role)
    if min_level < 0:
        raise ValueError(f"Invalid role: {min_role}")

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if _role_level(user.role) < min_level:
            raise HTTPException(status_code=403, detail="Access denied")
        return user

    return dependency
