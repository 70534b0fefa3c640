"""Role-based access control dependencies."""

from fastapi import Depends, HTTPException, status

from marketplace.core.security import get_current_user
from marketplace.models.user import User


def require_role(*roles: str):
    """Return a FastAPI dependency that accepts users holding one of ``roles``."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This endpoint requires one of the roles: {', '.join(roles)}",
            )
        return user

    return _check


require_admin = require_role("admin")
