from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.user import User


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_admin_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(User.id).where(User.role == "admin", User.is_active.is_(True))
    )
    return list(result.scalars().all())


def primary_payout_method(user: User) -> dict[str, Any] | None:
    """Return the user's primary payout destination (first entry), if any."""
    methods = user.payout_methods or []
    if not methods:
        return None
    return methods[0]
