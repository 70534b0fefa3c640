"""Celery tasks that move escrows forward on elapsed time.

- escrow_auto_capture: capture approved holds once the booking is completed
- escrow_auto_release: IN_PROGRESS -> COMPLETE after the work period
- escrow_auto_payout: pay providers for approved, undisputed escrows
- escrow_flag_stuck: flag holds that were never captured
- escrow_auto_refund_cancelled: refund escrows whose booking was cancelled early
- escrow_poll_payouts: confirm PROCESSING payouts against the provider

Every sweep selects candidate ids first and then runs each one through the
engine on its own, so a failing escrow is logged and skipped.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.db.base import utcnow
from marketplace.db.session import async_session_factory
from marketplace.models.booking import Booking
from marketplace.models.escrow import Escrow
from marketplace.services.escrow.engine import Caller, EscrowEngine
from marketplace.services.escrow.payouts import list_processing_payouts
from marketplace.services.escrow.state_machine import EscrowStatus
from marketplace.services.gateways.registry import GatewayRegistry, build_registry
from marketplace.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


class ProcessingTracker:
    """In-process claim set for escrow ids with a cool-down after release.

    Keeps two overlapping sweeps in this worker from touching the same escrow.
    Other workers are kept out by the row lock and the status guards.
    """

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._active: set[int] = set()
        self._cooling: dict[int, float] = {}

    def _purge(self) -> None:
        now = self._clock()
        for escrow_id in [i for i, until in self._cooling.items() if until <= now]:
            del self._cooling[escrow_id]

    def is_busy(self, escrow_id: int) -> bool:
        self._purge()
        return escrow_id in self._active or escrow_id in self._cooling

    def claim(self, escrow_id: int) -> bool:
        if self.is_busy(escrow_id):
            return False
        self._active.add(escrow_id)
        return True

    def release(self, escrow_id: int) -> None:
        self._active.discard(escrow_id)
        self._cooling[escrow_id] = self._clock() + self.cooldown_seconds


processing = ProcessingTracker(settings.processing_cooldown_seconds)

_registry: GatewayRegistry | None = None


def get_registry() -> GatewayRegistry:
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry


async def _run_each(
    engine: EscrowEngine,
    escrow_ids: list[int],
    label: str,
    operation: Callable[[int], Awaitable[object]],
    tracker: ProcessingTracker,
) -> int:
    """Run ``operation`` for every claimable id; count the successes."""
    done = 0
    for escrow_id in escrow_ids:
        if not tracker.claim(escrow_id):
            logger.info("%s: escrow %s is already being processed, skipping", label, escrow_id)
            continue
        try:
            result = await operation(escrow_id)
            if result is not False:
                done += 1
        except Exception:
            await engine.db.rollback()
            logger.exception("%s failed for escrow %s", label, escrow_id)
        finally:
            tracker.release(escrow_id)
    logger.info("%s: processed %d of %d candidate escrows", label, done, len(escrow_ids))
    return done


async def _ids(db: AsyncSession, stmt) -> list[int]:
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------


async def auto_capture(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.auto_capture_after_hours)
    escrow_ids = await _ids(
        engine.db,
        select(Escrow.id)
        .join(Booking, Booking.id == Escrow.booking_id)
        .where(
            Escrow.status == EscrowStatus.FUNDS_HELD,
            Escrow.client_approved.is_(True),
            Escrow.client_approved_at <= cutoff,
            Booking.status == "completed",
        ),
    )
    return await _run_each(
        engine,
        escrow_ids,
        "auto-capture",
        lambda escrow_id: engine.capture_payment(escrow_id, Caller.system()),
        tracker,
    )


async def auto_release(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.auto_release_after_days)
    escrow_ids = await _ids(
        engine.db,
        select(Escrow.id)
        .join(Booking, Booking.id == Escrow.booking_id)
        .where(
            Escrow.status == EscrowStatus.IN_PROGRESS,
            Escrow.updated_at <= cutoff,
            Escrow.dispute_raised.is_(False),
            Booking.status == "completed",
        ),
    )
    return await _run_each(engine, escrow_ids, "auto-release", engine.release_escrow, tracker)


async def auto_payout(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.auto_payout_after_hours)
    escrow_ids = await _ids(
        engine.db,
        select(Escrow.id).where(
            Escrow.status.in_([EscrowStatus.COMPLETE, EscrowStatus.IN_PROGRESS]),
            Escrow.updated_at <= cutoff,
            Escrow.client_approved.is_(True),
            Escrow.dispute_raised.is_(False),
        ),
    )
    return await _run_each(
        engine,
        escrow_ids,
        "auto-payout",
        lambda escrow_id: engine.process_payout(escrow_id, Caller.system()),
        tracker,
    )


async def flag_stuck(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.stuck_escrow_after_days)
    escrow_ids = await _ids(
        engine.db,
        select(Escrow.id).where(
            Escrow.status == EscrowStatus.FUNDS_HELD,
            Escrow.created_at <= cutoff,
            Escrow.flagged_as_stuck.is_(False),
        ),
    )
    return await _run_each(engine, escrow_ids, "stuck-flagging", engine.flag_stuck, tracker)


async def auto_refund_cancelled(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    """Refund escrows whose booking was cancelled before its scheduled date. One attempt each."""
    escrow_ids = await _ids(
        engine.db,
        select(Escrow.id)
        .join(Booking, Booking.id == Escrow.booking_id)
        .where(
            Escrow.status.in_([EscrowStatus.CREATED, EscrowStatus.FUNDS_HELD]),
            Escrow.auto_refund_attempted.is_(False),
            Booking.status == "cancelled",
            or_(Booking.scheduled_at.is_(None), Booking.updated_at < Booking.scheduled_at),
        ),
    )

    async def _refund(escrow_id: int) -> object:
        await engine.mark_auto_refund_attempted(escrow_id)
        return await engine.refund_payment(
            escrow_id, Caller.system(), "Booking cancelled before the scheduled date",
        )

    return await _run_each(engine, escrow_ids, "auto-refund", _refund, tracker)


async def poll_payouts(
    engine: EscrowEngine, now: datetime | None = None, tracker: ProcessingTracker = processing,
) -> int:
    """Ask the payout provider about PROCESSING payouts and settle the finished ones."""
    payouts = await list_processing_payouts(engine.db)
    settled = 0
    for payout in payouts:
        payout_id, escrow_id = payout.id, payout.escrow_id
        provider, reference = payout.payout_provider, payout.gateway_payout_id
        if not tracker.claim(escrow_id):
            continue
        try:
            adapter = engine.gateways.for_payouts(provider)
            status = await adapter.get_payout_status(reference)
            if status.state == "completed":
                await engine.complete_payout(payout_id)
                settled += 1
            elif status.state == "failed":
                await engine.fail_payout(payout_id, status.failure_reason or "Payout failed at provider")
                settled += 1
        except Exception:
            await engine.db.rollback()
            logger.exception("Payout status poll failed for payout %s", payout_id)
        finally:
            tracker.release(escrow_id)
    logger.info("payout-poll: settled %d of %d processing payouts", settled, len(payouts))
    return settled


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


def _run_sweep(sweep) -> int:
    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                return await sweep(EscrowEngine(db, get_registry()))
            finally:
                await db.close()

    return worker_loop().run_until_complete(_run())


@celery_app.task(name="escrow_auto_capture", bind=True, max_retries=3, default_retry_delay=60)
def escrow_auto_capture(self) -> int:
    try:
        return _run_sweep(auto_capture)
    except Exception as exc:
        logger.exception("escrow_auto_capture failed")
        raise self.retry(exc=exc)


@celery_app.task(name="escrow_auto_release", bind=True, max_retries=3, default_retry_delay=60)
def escrow_auto_release(self) -> int:
    try:
        return _run_sweep(auto_release)
    except Exception as exc:
        logger.exception("escrow_auto_release failed")
        raise self.retry(exc=exc)


@celery_app.task(name="escrow_auto_payout", bind=True, max_retries=3, default_retry_delay=60)
def escrow_auto_payout(self) -> int:
    try:
        return _run_sweep(auto_payout)
    except Exception as exc:
        logger.exception("escrow_auto_payout failed")
        raise self.retry(exc=exc)


@celery_app.task(name="escrow_flag_stuck", bind=True, max_retries=3, default_retry_delay=60)
def escrow_flag_stuck(self) -> int:
    try:
        return _run_sweep(flag_stuck)
    except Exception as exc:
        logger.exception("escrow_flag_stuck failed")
        raise self.retry(exc=exc)


@celery_app.task(name="escrow_auto_refund_cancelled", bind=True, max_retries=3, default_retry_delay=60)
def escrow_auto_refund_cancelled(self) -> int:
    try:
        return _run_sweep(auto_refund_cancelled)
    except Exception as exc:
        logger.exception("escrow_auto_refund_cancelled failed")
        raise self.retry(exc=exc)


@celery_app.task(name="escrow_poll_payouts", bind=True, max_retries=3, default_retry_delay=60)
def escrow_poll_payouts(self) -> int:
    try:
        return _run_sweep(poll_payouts)
    except Exception as exc:
        logger.exception("escrow_poll_payouts failed")
        raise self.retry(exc=exc)
