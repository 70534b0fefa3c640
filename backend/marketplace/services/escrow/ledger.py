"""Append-only escrow transaction ledger.

Entries are only ever inserted. The ORM listeners below turn any attempt to
update or delete a flushed entry into LedgerImmutableError.
"""

import hashlib
import json
import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.db.base import utcnow
from marketplace.models.escrow import Escrow
from marketplace.models.escrow_transaction import EscrowTransaction
from marketplace.services.escrow.errors import LedgerImmutableError

logger = logging.getLogger(__name__)


class TransactionType(StrEnum):
    HOLD = "HOLD"
    CAPTURE = "CAPTURE"
    REFUND = "REFUND"
    DISPUTE_INITIATED = "DISPUTE_INITIATED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    PAYOUT = "PAYOUT"


class TransactionStatus(StrEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@event.listens_for(EscrowTransaction, "before_update")
def _reject_update(mapper, connection, target: EscrowTransaction) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} is immutable")


@event.listens_for(EscrowTransaction, "before_delete")
def _reject_delete(mapper, connection, target: EscrowTransaction) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be deleted")


def entry_fingerprint(**fields: Any) -> str:
    """Short digest of what an entry records; equal only for a replay of the same call."""
    payload = json.dumps(fields, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def build_idempotency_key(
    escrow_id: int, operation: str, status: str, at: datetime, fingerprint: str | None = None,
) -> str:
    """``{escrow_id}:{operation}:{status}:{bucket}[:{fingerprint}]``, bucket = timestamp floored to the window."""
    window = max(settings.ledger_idempotency_window_seconds, 1)
    bucket = int(at.timestamp()) // window * window
    key = f"{escrow_id}:{operation}:{status}:{bucket}"
    return f"{key}:{fingerprint}" if fingerprint else key


async def record_transaction(
    db: AsyncSession,
    escrow: Escrow,
    transaction_type: TransactionType,
    status: TransactionStatus,
    *,
    operation: str | None = None,
    initiated_by: int | None = None,
    gateway_provider: str | None = None,
    gateway_transaction_id: str | None = None,
    gateway_message: str | None = None,
    reason: str | None = None,
    tags: list[str] | None = None,
    notes: str | None = None,
    related_payout_id: int | None = None,
    extra: dict[str, Any] | None = None,
    previous_balance: int | None = None,
    new_balance: int | None = None,
    amount: int | None = None,
) -> EscrowTransaction:
    """Append one ledger entry for ``escrow`` within the caller's transaction.

    A retried call landing in the same idempotency bucket with the same
    content returns the entry already written instead of a second one. A
    different payout, gateway transaction or reason in that bucket is a
    separate operation and gets its own entry. The caller commits.
    """
    now = utcnow()
    entry_amount = escrow.amount if amount is None else amount
    fingerprint = entry_fingerprint(
        amount=entry_amount,
        initiated_by=initiated_by,
        gateway_transaction_id=gateway_transaction_id,
        related_payout_id=related_payout_id,
        reason=reason,
        notes=notes,
        extra=extra,
    )
    key = build_idempotency_key(
        escrow.id, operation or transaction_type.value.lower(), status.value, now, fingerprint,
    )

    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.idempotency_key == key)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        logger.info("Ledger entry %s already recorded, reusing", key)
        return existing

    details: dict[str, Any] = {"tags": tags or []}
    if reason:
        details["reason"] = reason
    if notes:
        details["notes"] = notes
    if related_payout_id is not None:
        details["related_payout_id"] = related_payout_id
    if extra:
        details.update(extra)

    entry = EscrowTransaction(
        escrow_id=escrow.id,
        transaction_type=transaction_type.value,
        amount=entry_amount,
        currency=escrow.currency,
        status=status.value,
        initiated_by=initiated_by,
        gateway_provider=gateway_provider,
        gateway_transaction_id=gateway_transaction_id,
        gateway_message=gateway_message,
        details=details,
        previous_balance=previous_balance,
        new_balance=new_balance,
        timestamp=now,
        idempotency_key=key,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_transactions(db: AsyncSession, escrow_id: int) -> list[EscrowTransaction]:
    result = await db.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.escrow_id == escrow_id)
        .order_by(EscrowTransaction.timestamp, EscrowTransaction.id)
    )
    return list(result.scalars().all())
