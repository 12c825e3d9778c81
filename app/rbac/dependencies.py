"""
RBAC dependencies — role enforcement for administrative routes.

`require_role` is a *dependency factory*: call it with one or more role
names and it returns a FastAPI dependency that will:

1. Resolve the caller (via `get_current_principal`).
2. Verify the caller holds at least one of the required roles.
3. Return 403 on failure — with NO details about which roles exist.

Usage in a route:
    @router.post("/sweep", dependencies=[Depends(require_role("ADMIN"))])
    async def sweep(...): ...

Or inject the principal:
    @router.post("/users/{user_id}/cleanup")
    async def cleanup(admin: Principal = Depends(require_role("ADMIN"))): ...
"""

import logging

from fastapi import Depends, HTTPException, status

from app.core.security import Principal, get_current_principal

logger = logging.getLogger("rbac")


class require_role:
    """
    Dependency factory.

    Can be used as:
        Depends(require_role("ADMIN"))
        Depends(require_role("ADMIN", "SUPPORT"))
    """

    def __init__(self, *role_names: str):
        self.allowed_roles = set(role_names)

    async def __call__(
        self,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if self.allowed_roles.isdisjoint(principal.roles):
            logger.warning(
                "Role check failed for user %s — required one of: %s",
                principal.user_id,
                self.allowed_roles,
            )
            # Intentionally vague — do NOT reveal which roles are required
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal
