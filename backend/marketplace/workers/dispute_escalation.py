"""Celery tasks for dispute escalation reminders (feature-flagged)."""

import logging

from marketplace.core.config import settings
from marketplace.db.session import async_session_factory
from marketplace.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(name="dispute_remind_admins", bind=True, max_retries=3, default_retry_delay=60)
def dispute_remind_admins(self) -> int:
    """Remind admins about disputes unresolved for too long."""
    from marketplace.services.escrow.disputes import remind_admins_of_unresolved

    if not settings.enable_dispute_escalations:
        return 0

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                sent = await remind_admins_of_unresolved(db)
                logger.info("Sent %d unresolved-dispute reminders", sent)
                return sent
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("dispute_remind_admins failed")
        raise self.retry(exc=exc)


@celery_app.task(name="dispute_nudge_parties", bind=True, max_retries=3, default_retry_delay=60)
def dispute_nudge_parties(self) -> int:
    """Ask dispute parties for evidence when none has been added."""
    from marketplace.services.escrow.disputes import nudge_parties_for_evidence

    if not settings.enable_dispute_escalations:
        return 0

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                sent = await nudge_parties_for_evidence(db)
                logger.info("Sent %d dispute evidence nudges", sent)
                return sent
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("dispute_nudge_parties failed")
        raise self.retry(exc=exc)
