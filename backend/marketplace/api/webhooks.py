"""Inbound payment gateway webhooks.

Signatures are verified before anything is read or written. Each delivery
is stored as a WebhookEvent so redeliveries are acknowledged without being
applied twice. Payout outcomes go through the escrow engine.
"""

import hashlib
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.deps import get_db, get_gateway_registry
from marketplace.db.base import utcnow
from marketplace.models.webhook_event import WebhookEvent
from marketplace.services.escrow.engine import EscrowEngine
from marketplace.services.escrow.errors import EscrowError
from marketplace.services.escrow.payouts import find_payout_by_reference
from marketplace.services.gateways.registry import GatewayRegistry
from marketplace.services.gateways.webhooks import (
    PAYOUT_COMPLETED,
    PAYOUT_FAILED,
    SIGNATURE_HEADER,
    NormalizedEvent,
    WebhookVerificationError,
    normalize_event,
    verify_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _claim_event(db: AsyncSession, event: NormalizedEvent, payload: dict) -> int | None:
    """Store the delivery; return its row id, or None if it was already handled."""
    result = await db.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == event.provider,
            WebhookEvent.event_id == event.event_id,
        )
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        if existing.status != "failed":
            return None
        existing.status = "processing"
        existing.error = None
        await db.commit()
        return existing.id

    record = WebhookEvent(
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type or "unknown",
        event_timestamp=event.occurred_at,
        payload=payload,
        status="processing",
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent redelivery won the insert
        await db.rollback()
        return None
    return record.id


async def _finish_event(db: AsyncSession, record_id: int, status_: str, error: str | None = None) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == record_id)
        .values(status=status_, error=error, processed_at=utcnow())
    )
    await db.commit()


async def _apply_payout_event(
    db: AsyncSession, gateways: GatewayRegistry, event: NormalizedEvent,
) -> str | None:
    """Settle the payout the event refers to. Returns an error note, if any."""
    if not event.payout_ref:
        return "Event carries no payout reference"
    payout = await find_payout_by_reference(db, event.provider, event.payout_ref)
    if payout is None:
        logger.warning("%s webhook for unknown payout %s", event.provider, event.payout_ref)
        return f"Unknown payout {event.payout_ref}"

    engine = EscrowEngine(db, gateways)
    if event.outcome == PAYOUT_COMPLETED:
        await engine.complete_payout(payout.id)
    elif event.outcome == PAYOUT_FAILED:
        await engine.fail_payout(payout.id, event.failure_reason or "Payout failed at provider")
    return None


async def _handle_webhook(
    provider: str,
    kind: str,
    request: Request,
    db: AsyncSession,
    gateways: GatewayRegistry,
) -> dict:
    if provider not in gateways:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    raw = await request.body()
    adapter = gateways.get(provider)
    try:
        verify_signature(adapter.webhook_secret, request.headers.get(SIGNATURE_HEADER), raw)
    except WebhookVerificationError as exc:
        logger.warning(
            "Rejected %s %s webhook: %s",
            provider, kind, exc,
            extra={"client_ip": request.client.host if request.client else None},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    event = normalize_event(provider, payload)
    if not event.event_id:
        event.event_id = hashlib.sha256(raw).hexdigest()

    record_id = await _claim_event(db, event, payload)
    if record_id is None:
        logger.info("Duplicate %s webhook %s ignored", provider, event.event_id)
        return {"received": True, "duplicate": True}

    error = None
    try:
        if kind == "payouts" and event.outcome:
            error = await _apply_payout_event(db, gateways, event)
    except EscrowError as exc:
        await db.rollback()
        logger.warning("%s webhook %s not applied: %s", provider, event.event_id, exc)
        await _finish_event(db, record_id, "failed", str(exc))
        return {"received": True}
    except Exception as exc:
        await db.rollback()
        await _finish_event(db, record_id, "failed", str(exc) or type(exc).__name__)
        raise

    await _finish_event(db, record_id, "completed", error)
    logger.info("Processed %s webhook %s (%s)", provider, event.event_id, event.event_type)
    return {"received": True}


@router.post("/{provider}/payments")
async def payment_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
):
    """Payment events are verified and recorded; escrow state moves only via the API."""
    return await _handle_webhook(provider, "payments", request, db, gateways)


@router.post("/{provider}/payouts")
async def payout_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
):
    return await _handle_webhook(provider, "payouts", request, db, gateways)
