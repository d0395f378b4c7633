"""
Security guards for role-based access control.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from coop_backend.app.models.enums import UserRole
from coop_backend.app.core.dependencies import get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin/payments")
        async def list_payments(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role_str = current_user.get("role")

        if not user_role_str:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role information missing from token"
            )

        try:
            user_role = UserRole(user_role_str)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


# Every cooperative role owns fees and may pay them.
require_fee_payer = require_role([
    UserRole.MEMBER,
    UserRole.UNIT_LEADER,
    UserRole.ZONE_LEADER,
    UserRole.ADMIN,
])

require_admin = require_role([UserRole.ADMIN])
