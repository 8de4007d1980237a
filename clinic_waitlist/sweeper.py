"""
Expiry sweeper — closes offers nobody acted on and hands the slot to the
next patient in line.

Runs from the scheduler (see clinic_waitlist.scheduler) concurrently with
live slot-freed calls. Safe to re-run at any time: only notified entries
past their deadline are touched.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from clinic_waitlist.config import settings
from clinic_waitlist.engine import WaitlistEngine
from clinic_waitlist.errors import ConflictError, EntryNotFoundError
from clinic_waitlist.models import SlotKey, WaitlistStatus

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(self, engine: WaitlistEngine, *, cascade: Optional[bool] = None):
        self.engine = engine
        self.store = engine.store
        self.cascade = settings.cascade_on_expiry if cascade is None else cascade

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire every lapsed offer, then re-offer each freed slot. Returns the number expired."""
        now = now or self.engine.clock()
        lapsed = await self.store.find_expired(now)

        expired_count = 0
        freed: dict[SlotKey, str] = {}
        for entry in lapsed:
            try:
                await self.store.conditional_update(
                    entry.id,
                    entry.version,
                    {"status": WaitlistStatus.EXPIRED, "updated_at": now},
                )
            except (ConflictError, EntryNotFoundError):
                # Booked or cancelled after we read it.
                logger.debug("Entry %s resolved before expiry, skipping", entry.id)
                continue

            expired_count += 1
            logger.info("Waitlist offer for entry %s on %s expired", entry.id, entry.slot_key)
            freed.setdefault(entry.slot_key, entry.offered_time or entry.preferred_time)

        logger.info("Expired %d waitlist notifications", expired_count)

        if self.cascade:
            for slot_key, offered_time in freed.items():
                try:
                    outcome = await self.engine.on_slot_freed(
                        slot_key.provider_id,
                        slot_key.service_id,
                        slot_key.preferred_date,
                        offered_time,
                        now=now,
                    )
                except Exception as exc:
                    logger.error("Cascade for %s failed: %s", slot_key, exc)
                    continue
                if outcome.notified:
                    logger.info("Cascaded %s to entry %s", slot_key, outcome.notified_entry_id)

        return expired_count
