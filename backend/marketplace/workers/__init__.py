import asyncio

from celery import Celery
from celery.schedules import crontab

from marketplace.core.config import settings
from marketplace.core.logging_config import setup_logging

setup_logging()

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def cron(expr: str) -> crontab:
    """Build a crontab from a five-field cron string (minute hour dom month dow)."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {expr!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app = Celery(
    "marketplace_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

beat_schedule = {
    "escrow-auto-capture": {
        "task": "escrow_auto_capture",
        "schedule": cron(settings.auto_capture_schedule),
    },
    "escrow-auto-release": {
        "task": "escrow_auto_release",
        "schedule": cron(settings.auto_release_schedule),
    },
    "escrow-auto-payout": {
        "task": "escrow_auto_payout",
        "schedule": cron(settings.auto_payout_schedule),
    },
    "escrow-flag-stuck": {
        "task": "escrow_flag_stuck",
        "schedule": cron(settings.stuck_escrow_schedule),
    },
    "escrow-auto-refund-cancelled": {
        "task": "escrow_auto_refund_cancelled",
        "schedule": cron(settings.auto_refund_schedule),
    },
    "escrow-poll-payouts": {
        "task": "escrow_poll_payouts",
        "schedule": cron(settings.payout_poll_schedule),
    },
}

if settings.enable_dispute_escalations:
    beat_schedule.update({
        "dispute-remind-admins": {
            "task": "dispute_remind_admins",
            "schedule": cron(settings.dispute_admin_schedule),
        },
        "dispute-nudge-parties": {
            "task": "dispute_nudge_parties",
            "schedule": cron(settings.dispute_party_schedule),
        },
    })

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_hijack_root_logger=False,
    beat_schedule=beat_schedule,
)

# Import tasks so they are registered with the celery app
import marketplace.workers.escrow_automation  # noqa: F401, E402
import marketplace.workers.dispute_escalation  # noqa: F401, E402
