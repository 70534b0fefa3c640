"""Fire-and-forget in-app notifications for escrow events.

Each notification is written in its own session so a failure here never
rolls back the financial operation that triggered it. Exceptions are
caught and logged.
"""

import logging
from typing import Any

from marketplace.db.session import async_session_factory
from marketplace.models.notification import Notification
from marketplace.services.user import get_admin_ids

logger = logging.getLogger(__name__)

# type -> (title, message template, priority)
_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "escrow_created": (
        "Funds held",
        "Escrow #{escrow_id}: {amount} {currency} is held for booking #{booking_id}.",
        "medium",
    ),
    "payment_captured": (
        "Payment captured",
        "Escrow #{escrow_id}: payment of {amount} {currency} was captured.",
        "medium",
    ),
    "payment_refunded": (
        "Payment refunded",
        "Escrow #{escrow_id}: {amount} {currency} was refunded. Reason: {reason}",
        "high",
    ),
    "proof_uploaded": (
        "Proof of work uploaded",
        "Escrow #{escrow_id}: the provider uploaded proof of work.",
        "medium",
    ),
    "escrow_released": (
        "Escrow released",
        "Escrow #{escrow_id}: work is complete and funds are ready for payout.",
        "medium",
    ),
    "payout_initiated": (
        "Payout initiated",
        "Escrow #{escrow_id}: payout of {amount} {currency} is on its way.",
        "medium",
    ),
    "payout_completed": (
        "Payout completed",
        "Escrow #{escrow_id}: payout of {amount} {currency} has been completed.",
        "medium",
    ),
    "payout_failed": (
        "Payout failed",
        "Escrow #{escrow_id}: payout failed ({reason}). It will be retried.",
        "high",
    ),
    "escrow_dispute_raised": (
        "Dispute raised",
        "Escrow #{escrow_id}: a dispute was raised. Reason: {reason}",
        "high",
    ),
    "escrow_dispute_resolved": (
        "Dispute resolved",
        "Escrow #{escrow_id}: the dispute was resolved with decision {decision}.",
        "high",
    ),
    "escrow_dispute_split": (
        "Split settlement required",
        "Escrow #{escrow_id}: split decided (client {client_share}, provider "
        "{provider_share} {currency}). Settle manually.",
        "urgent",
    ),
    "escrow_stuck": (
        "Escrow needs attention",
        "Escrow #{escrow_id}: funds have been held since {since} without capture.",
        "high",
    ),
    "escrow_dispute_unresolved": (
        "Dispute unresolved",
        "Escrow #{escrow_id}: dispute open for {days} days and still unresolved.",
        "high",
    ),
    "escrow_dispute_evidence_needed": (
        "Add dispute evidence",
        "Escrow #{escrow_id}: please add evidence to support the dispute.",
        "medium",
    ),
}


def escrow_context(escrow, **extra: Any) -> dict[str, Any]:
    ctx: dict[str, Any] = {
        "escrow_id": escrow.id,
        "booking_id": escrow.booking_id,
        "amount": escrow.amount,
        "currency": escrow.currency,
        "status": escrow.status,
    }
    ctx.update(extra)
    return ctx


def _render(type_: str, data: dict[str, Any]) -> tuple[str, str, str]:
    title, template, priority = _TEMPLATES[type_]
    try:
        message = template.format(**data)
    except (KeyError, IndexError):
        logger.warning("Missing template field for %s, sending raw title", type_)
        message = title
    return title, message, priority


async def notify_users(user_ids: list[int], type_: str, data: dict[str, Any]) -> None:
    """Persist one notification per recipient. Never raises."""
    recipients = [uid for uid in dict.fromkeys(user_ids) if uid is not None]
    if not recipients:
        return
    try:
        title, message, priority = _render(type_, data)
        async with async_session_factory() as db:
            for user_id in recipients:
                db.add(
                    Notification(
                        user_id=user_id,
                        type=type_,
                        title=title,
                        message=message,
                        data=data,
                        priority=priority,
                    )
                )
            await db.commit()
        logger.info("Notification sent: %s to %d user(s)", type_, len(recipients))
    except Exception:
        logger.exception("Failed to send %s notification", type_)


async def notify_admins(type_: str, data: dict[str, Any]) -> None:
    try:
        async with async_session_factory() as db:
            admin_ids = await get_admin_ids(db)
    except Exception:
        logger.exception("Failed to load admins for %s notification", type_)
        return
    await notify_users(admin_ids, type_, data)


async def notify_escrow_event(escrow, type_: str, *, to: tuple[str, ...], **extra: Any) -> None:
    """Notify the escrow's parties. ``to`` holds any of "client", "provider", "admins"."""
    data = escrow_context(escrow, **extra)
    user_ids: list[int] = []
    if "client" in to:
        user_ids.append(escrow.client_id)
    if "provider" in to:
        user_ids.append(escrow.provider_id)
    await notify_users(user_ids, type_, data)
    if "admins" in to:
        await notify_admins(type_, data)
