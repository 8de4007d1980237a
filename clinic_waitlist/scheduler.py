"""
APScheduler job that drives the expiry sweeper:

  - Every SWEEP_INTERVAL_MINUTES (hourly by default): expire lapsed waitlist
    offers and cascade each freed slot to the next patient
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from clinic_waitlist.config import settings
from clinic_waitlist.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expire_waitlist_offers"

_scheduler: AsyncIOScheduler | None = None


async def _expire_waitlist_offers(sweeper: ExpirySweeper) -> None:
    try:
        expired = await sweeper.sweep()
    except Exception as exc:
        # Next run picks up whatever this one missed.
        logger.error("Waitlist expiry sweep failed: %s", exc)
        return
    logger.info("Scheduled sweep expired %d waitlist offers", expired)


def get_scheduler(sweeper: ExpirySweeper) -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone=settings.office_timezone)

        _scheduler.add_job(
            _expire_waitlist_offers,
            IntervalTrigger(minutes=settings.sweep_interval_minutes),
            args=[sweeper],
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    return _scheduler


def reset_scheduler() -> None:
    """Forget the cached scheduler (after shutdown, so a new app can build its own)."""
    global _scheduler
    _scheduler = None
