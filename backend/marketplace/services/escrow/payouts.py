"""Payout records: one row per payout attempt, with its own lifecycle."""

from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.payout import Payout
from marketplace.models.user import User
from marketplace.services.escrow.errors import EscrowValidationError
from marketplace.services.user import primary_payout_method


class PayoutStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)

DESTINATION_TYPES = ("bank_account", "wallet", "crypto")


def resolve_destination(provider: User) -> tuple[str, str | None, dict[str, Any]]:
    """Return (destination_type, payout provider override, details) for the primary method."""
    method = primary_payout_method(provider)
    if method is None:
        raise EscrowValidationError("Provider has no payout method on file")
    destination_type = method.get("type")
    if destination_type not in DESTINATION_TYPES:
        raise EscrowValidationError(f"Unsupported payout destination type: {destination_type}")
    return destination_type, method.get("provider"), dict(method.get("details") or {})


def payout_reference(escrow_id: int, payout_id: int) -> str:
    return f"escrow-{escrow_id}-payout-{payout_id}"


async def get_payout(db: AsyncSession, payout_id: int, *, for_update: bool = False) -> Payout | None:
    stmt = select(Payout).where(Payout.id == payout_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_latest_payout(db: AsyncSession, escrow_id: int) -> Payout | None:
    result = await db.execute(
        select(Payout)
        .where(Payout.escrow_id == escrow_id)
        .order_by(Payout.created_at.desc(), Payout.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_open_payout(db: AsyncSession, escrow_id: int) -> Payout | None:
    """Most recent PENDING or PROCESSING payout for the escrow, if any."""
    result = await db.execute(
        select(Payout)
        .where(Payout.escrow_id == escrow_id, Payout.status.in_(OPEN_PAYOUT_STATUSES))
        .order_by(Payout.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_payout_by_reference(
    db: AsyncSession, payout_provider: str, gateway_payout_id: str,
) -> Payout | None:
    result = await db.execute(
        select(Payout).where(
            Payout.payout_provider == payout_provider,
            Payout.gateway_payout_id == gateway_payout_id,
        )
    )
    return result.scalar_one_or_none()


async def list_processing_payouts(db: AsyncSession, limit: int = 100) -> list[Payout]:
    result = await db.execute(
        select(Payout)
        .where(
            Payout.status == PayoutStatus.PROCESSING,
            Payout.gateway_payout_id.is_not(None),
        )
        .order_by(Payout.initiated_at)
        .limit(limit)
    )
    return list(result.scalars().all())
