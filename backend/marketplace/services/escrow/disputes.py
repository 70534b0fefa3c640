"""Admin dispute resolution and dispute escalation reminders."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.db.base import utcnow
from marketplace.models.escrow import Escrow
from marketplace.models.notification import Notification
from marketplace.services.escrow.engine import Caller, EscrowEngine
from marketplace.services.escrow.errors import EscrowValidationError, UnauthorizedError
from marketplace.services.escrow.ledger import TransactionStatus, TransactionType, record_transaction
from marketplace.services.escrow.state_machine import (
    Actor,
    DisputeDecision,
    EscrowAction,
    EscrowStatus,
    validate_transition,
)
from marketplace.services.notification import notify_escrow_event, notify_users
from marketplace.services.user import get_admin_ids

logger = logging.getLogger(__name__)

# Statuses in which the hold has not been converted into a charge yet
_UNCAPTURED = {EscrowStatus.CREATED, EscrowStatus.FUNDS_HELD}


def split_amount(amount: int) -> tuple[int, int]:
    """Equal split: client gets the floor half, provider the remainder."""
    client_share = amount // 2
    return client_share, amount - client_share


async def _record_resolution(
    engine: EscrowEngine,
    escrow: Escrow,
    caller: Caller,
    decision: DisputeDecision,
    notes: str | None,
    extra: dict | None = None,
) -> None:
    escrow.resolution_decision = decision.value
    escrow.resolution_decided_by = caller.user_id
    escrow.resolution_decided_at = utcnow()
    escrow.resolution_notes = notes
    await record_transaction(
        engine.db,
        escrow,
        TransactionType.DISPUTE_RESOLVED,
        TransactionStatus.SUCCESS,
        initiated_by=caller.user_id,
        reason=f"Dispute resolved with decision: {decision.value}",
        notes=notes,
        tags=["dispute_resolution", decision.value.lower()],
        extra=extra,
    )


async def resolve_dispute(
    engine: EscrowEngine,
    escrow_id: int,
    caller: Caller,
    decision: str,
    notes: str | None = None,
) -> Escrow:
    """Adjudicate a disputed escrow (admin only).

    REFUND_CLIENT refunds through the engine. PAYOUT_PROVIDER returns the
    escrow to work (capturing first if the hold was never captured) and pays
    the provider. SPLIT only records the computed shares: no money moves and
    the escrow stays in DISPUTE until it is settled manually.
    """
    if not caller.is_admin:
        raise UnauthorizedError("Only admins can resolve disputes")
    try:
        ruling = DisputeDecision(decision)
    except ValueError:
        raise EscrowValidationError(f"Invalid dispute decision: {decision}")

    escrow = await engine.load_escrow(escrow_id)
    validate_transition(escrow.status, EscrowAction.RESOLVE_DISPUTE, Actor.ADMIN)

    if ruling is DisputeDecision.REFUND_CLIENT:
        escrow = await engine.refund_payment(
            escrow_id,
            caller,
            "Dispute resolved: refund to client",
            dispute_resolution=True,
        )
        escrow.dispute_raised = False
        await _record_resolution(engine, escrow, caller, ruling, notes)
        await engine.db.commit()

    elif ruling is DisputeDecision.PAYOUT_PROVIDER:
        previous = escrow.dispute_previous_status or EscrowStatus.IN_PROGRESS
        if previous in _UNCAPTURED or not escrow.provider_capture_id:
            await engine.capture_hold(escrow, caller.user_id, ["capture", "dispute_resolution"])

        escrow.dispute_raised = False
        if previous == EscrowStatus.PAYOUT_INITIATED:
            # A payout is already in flight; let its webhook or poll finish it
            escrow.status = EscrowStatus.PAYOUT_INITIATED.value
            await _record_resolution(engine, escrow, caller, ruling, notes)
            await engine.db.commit()
        else:
            escrow.status = validate_transition(
                escrow.status, EscrowAction.RESTORE, Actor.ADMIN,
            ).value
            await _record_resolution(engine, escrow, caller, ruling, notes)
            await engine.db.commit()
            escrow, _ = await engine.process_payout(escrow.id, caller)

    else:
        client_share, provider_share = split_amount(escrow.amount)
        await _record_resolution(
            engine,
            escrow,
            caller,
            ruling,
            notes,
            extra={"split": {"client": client_share, "provider": provider_share}},
        )
        await engine.db.commit()
        logger.info(
            "Dispute split on escrow %s: client %s, provider %s %s (manual settlement)",
            escrow.id, client_share, provider_share, escrow.currency,
        )
        await notify_escrow_event(
            escrow,
            "escrow_dispute_split",
            to=("admins",),
            client_share=client_share,
            provider_share=provider_share,
        )

    logger.info("Dispute on escrow %s resolved: %s", escrow.id, ruling.value)
    await notify_escrow_event(
        escrow, "escrow_dispute_resolved", to=("client", "provider"), decision=ruling.value,
    )
    return escrow


# ---------------------------------------------------------------------------
# Escalation reminders
# ---------------------------------------------------------------------------


async def _recently_notified(
    db: AsyncSession, user_id: int, type_: str, escrow_id: int, since: datetime,
) -> bool:
    result = await db.execute(
        select(Notification.id)
        .where(
            Notification.user_id == user_id,
            Notification.type == type_,
            Notification.created_at >= since,
            Notification.data["escrow_id"].as_integer() == escrow_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def remind_admins_of_unresolved(db: AsyncSession, now: datetime | None = None) -> int:
    """Remind admins of disputes left open for too long. Returns reminders sent."""
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.dispute_admin_unresolved_days)
    dedup_since = now - timedelta(hours=settings.dispute_admin_dedup_hours)

    result = await db.execute(
        select(Escrow)
        .where(
            Escrow.status == EscrowStatus.DISPUTE,
            Escrow.dispute_raised_at <= cutoff,
        )
        .order_by(Escrow.dispute_raised_at)
        .limit(settings.dispute_escalation_limit)
    )
    escrows = list(result.scalars().all())
    if not escrows:
        return 0

    admin_ids = await get_admin_ids(db)
    sent = 0
    for escrow in escrows:
        days = max((now - escrow.dispute_raised_at).days, 1)
        recipients = [
            admin_id for admin_id in admin_ids
            if not await _recently_notified(db, admin_id, "escrow_dispute_unresolved", escrow.id, dedup_since)
        ]
        if not recipients:
            continue
        await notify_users(
            recipients,
            "escrow_dispute_unresolved",
            {"escrow_id": escrow.id, "booking_id": escrow.booking_id, "days": days},
        )
        sent += len(recipients)
    return sent


async def nudge_parties_for_evidence(db: AsyncSession, now: datetime | None = None) -> int:
    """Ask both parties for evidence on disputes that still have none."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.dispute_party_evidence_after_hours)
    dedup_since = now - timedelta(hours=settings.dispute_party_dedup_hours)

    result = await db.execute(
        select(Escrow)
        .where(
            Escrow.status == EscrowStatus.DISPUTE,
            Escrow.dispute_raised_at <= cutoff,
        )
        .order_by(Escrow.dispute_raised_at)
        .limit(settings.dispute_escalation_limit)
    )
    sent = 0
    for escrow in result.scalars().all():
        if escrow.dispute_evidence:
            continue
        recipients = [
            user_id for user_id in (escrow.client_id, escrow.provider_id)
            if not await _recently_notified(
                db, user_id, "escrow_dispute_evidence_needed", escrow.id, dedup_since,
            )
        ]
        if not recipients:
            continue
        await notify_users(
            recipients,
            "escrow_dispute_evidence_needed",
            {"escrow_id": escrow.id, "booking_id": escrow.booking_id},
        )
        sent += len(recipients)
    return sent
