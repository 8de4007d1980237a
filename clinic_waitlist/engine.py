"""
Waitlist engine — offers a freed appointment slot to exactly one waiting
patient at a time, in the order patients joined.

All coordination happens through conditional writes on individual entries:
concurrent slot-freed calls, patient bookings/cancellations and the expiry
sweeper can run in any interleaving without a shared lock.
"""

from __future__ import annotations

import asyncio
import logging
import zoneinfo
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from clinic_waitlist.config import Settings, settings
from clinic_waitlist.errors import (
    ConflictError,
    EntryNotFoundError,
    StaleOfferError,
    ValidationError,
)
from clinic_waitlist.models import (
    Patient,
    SlotFreedOutcome,
    SlotKey,
    WaitlistEntry,
    WaitlistStatus,
)
from clinic_waitlist.notifications import NotificationGateway
from clinic_waitlist.store import EntryStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require(**fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not value or not str(value).strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


class WaitlistEngine:
    """
    Owns the entry state machine. Build one per process with its store and
    gateway injected; it keeps no queue state of its own.
    """

    def __init__(
        self,
        store: EntryStore,
        gateway: NotificationGateway,
        *,
        clock: Clock = utcnow,
        offer_window: Optional[timedelta] = None,
        lookahead: Optional[int] = None,
        max_claim_attempts: Optional[int] = None,
        tz: Optional[str] = None,
        cfg: Settings = settings,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.offer_window = timedelta(hours=cfg.offer_window_hours) if offer_window is None else offer_window
        self.lookahead = cfg.candidate_lookahead if lookahead is None else lookahead
        self.max_claim_attempts = cfg.max_claim_attempts if max_claim_attempts is None else max_claim_attempts
        self.tz = zoneinfo.ZoneInfo(tz or cfg.office_timezone)
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Joining
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        provider_id: str,
        service_id: str,
        preferred_date: date,
        preferred_time: str,
        patient: Patient,
        *,
        provider_name: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> str:
        """
        Put a patient on the waitlist for a provider/service/day.

        Joining twice for the same day returns the existing entry id while
        that entry is still active or notified.
        """
        _require(
            provider_id=provider_id,
            service_id=service_id,
            preferred_time=preferred_time,
            user_id=patient.user_id,
            user_name=patient.user_name,
            user_email=patient.user_email,
        )
        if preferred_date is None:
            raise ValidationError("Missing required fields: preferred_date")

        now = self.clock()
        today = now.astimezone(self.tz).date()
        if preferred_date < today:
            raise ValidationError(
                f"Preferred date {preferred_date.isoformat()} is in the past (today is {today.isoformat()})"
            )

        slot_key = SlotKey(provider_id, service_id, preferred_date)
        existing = await self.store.find_duplicate(patient.user_id, slot_key)
        if existing:
            logger.info("User %s already waiting on %s as entry %s", patient.user_id, slot_key, existing)
            return existing

        entry = WaitlistEntry(
            user_id=patient.user_id,
            user_name=patient.user_name,
            user_email=patient.user_email,
            user_phone=patient.user_phone,
            provider_id=provider_id,
            provider_name=provider_name,
            service_id=service_id,
            service_name=service_name,
            preferred_date=preferred_date,
            preferred_time=preferred_time,
            status=WaitlistStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        entry_id, created = await self.store.insert_unique(entry)
        if not created:
            logger.info("User %s joined %s concurrently, reusing entry %s", patient.user_id, slot_key, entry_id)
            return entry_id
        logger.info("User %s joined waitlist for %s (entry %s)", patient.user_id, slot_key, entry_id)
        return entry_id

    # ------------------------------------------------------------------
    # Offering a freed slot
    # ------------------------------------------------------------------

    async def _offer_pending(self, slot_key: SlotKey) -> bool:
        return bool(await self.store.find(slot_key, WaitlistStatus.NOTIFIED, limit=1))

    async def on_slot_freed(
        self,
        provider_id: str,
        service_id: str,
        slot_date: date,
        available_time: str,
        *,
        now: Optional[datetime] = None,
    ) -> SlotFreedOutcome:
        """
        Offer a freed slot to the earliest active entry of its slot key.

        Candidates are claimed in FIFO order with a version-guarded write;
        losing a race moves on to the next candidate, and an exhausted
        candidate list is re-read up to max_claim_attempts times.
        """
        slot_key = SlotKey(provider_id, service_id, slot_date)
        outcome = SlotFreedOutcome(
            provider_id=provider_id,
            service_id=service_id,
            preferred_date=slot_date,
        )

        for attempt in range(1, self.max_claim_attempts + 1):
            outcome.attempts = attempt

            if await self._offer_pending(slot_key):
                logger.info("Slot %s already has a pending offer — not offering it twice", slot_key)
                outcome.offer_pending = True
                return outcome

            candidates = await self.store.find(slot_key, WaitlistStatus.ACTIVE, limit=self.lookahead)
            if not candidates:
                logger.info("No waitlist entries for %s", slot_key)
                return outcome

            claim_time = now or self.clock()
            expires_at = claim_time + self.offer_window
            for candidate in candidates:
                try:
                    claimed = await self.store.conditional_update(
                        candidate.id,
                        candidate.version,
                        {
                            "status": WaitlistStatus.NOTIFIED,
                            "notified_at": claim_time,
                            "expires_at": expires_at,
                            "offered_time": available_time,
                            "updated_at": claim_time,
                        },
                    )
                except ConflictError as exc:
                    if exc.reason == ConflictError.SLOT_OFFER_PENDING:
                        logger.info("Slot %s was offered concurrently — stopping", slot_key)
                        outcome.offer_pending = True
                        return outcome
                    logger.debug("Lost claim on entry %s, trying next candidate", candidate.id)
                    continue
                except EntryNotFoundError:
                    logger.debug("Entry %s vanished before claim, trying next candidate", candidate.id)
                    continue

                logger.info(
                    "Offered %s at %s to entry %s (%s), expires %s",
                    slot_key,
                    available_time,
                    claimed.id,
                    claimed.user_email,
                    expires_at.isoformat(),
                )
                self._dispatch(claimed, available_time, expires_at)
                outcome.notified_entry_id = claimed.id
                return outcome

        logger.warning(
            "Gave up offering %s after %d attempts — all candidates contended",
            slot_key,
            self.max_claim_attempts,
        )
        return outcome

    def _dispatch(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        task = asyncio.create_task(self._deliver(entry, offered_time, expires_at))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        try:
            await self.gateway.notify(entry, offered_time, expires_at)
        except Exception as exc:
            # The offer stands; delivery retries belong to the gateway.
            logger.error("Waitlist offer notification failed for entry %s: %s", entry.id, exc)

    async def drain(self) -> None:
        """Wait for in-flight offer notifications to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Resolving an offer
    # ------------------------------------------------------------------

    async def _load(self, entry_id: str) -> WaitlistEntry:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def mark_booked(self, entry_id: str, *, now: Optional[datetime] = None) -> WaitlistEntry:
        """
        Consume the offer held by entry_id. Raises StaleOfferError if the
        entry holds no live offer; the booking flow must then not book.
        """
        now = now or self.clock()
        entry = await self._load(entry_id)

        if entry.status != WaitlistStatus.NOTIFIED:
            raise StaleOfferError(entry_id, f"Waitlist entry {entry_id} has no open offer (status {entry.status.value}).")
        if not entry.offer_open(now):
            raise StaleOfferError(entry_id, f"The offer for waitlist entry {entry_id} expired at {entry.expires_at}.")

        try:
            booked = await self.store.conditional_update(
                entry_id,
                entry.version,
                {"status": WaitlistStatus.BOOKED, "updated_at": now},
            )
        except ConflictError as exc:
            raise StaleOfferError(entry_id, f"The offer for waitlist entry {entry_id} changed while booking.") from exc

        logger.info("Waitlist entry %s booked slot %s", entry_id, booked.slot_key)
        return booked

    async def mark_cancelled(
        self,
        entry_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> WaitlistEntry:
        """
        Patient withdraws from the waitlist. Does not cascade: if the entry
        held an offer, the caller re-invokes on_slot_freed for its slot key.
        """
        now = now or self.clock()
        for _ in range(self.max_claim_attempts):
            entry = await self._load(entry_id)
            if entry.status.is_terminal:
                raise StaleOfferError(
                    entry_id,
                    f"Waitlist entry {entry_id} is already {entry.status.value}.",
                )
            try:
                cancelled = await self.store.conditional_update(
                    entry_id,
                    entry.version,
                    {
                        "status": WaitlistStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancellation_reason": reason or "Cancelled by user",
                        "updated_at": now,
                    },
                )
            except ConflictError:
                logger.debug("Entry %s changed during cancellation, re-reading", entry_id)
                continue
            logger.info("Waitlist entry %s cancelled (was %s)", entry_id, entry.status.value)
            return cancelled

        raise StaleOfferError(entry_id, f"Waitlist entry {entry_id} kept changing; cancellation not applied.")

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_entry(self, entry_id: str) -> WaitlistEntry:
        return await self._load(entry_id)

    async def user_entries(self, user_id: str) -> list[WaitlistEntry]:
        return await self.store.find_by_user(user_id)

    async def is_user_on_waitlist(
        self,
        user_id: str,
        provider_id: str,
        service_id: str,
        preferred_date: date,
    ) -> bool:
        slot_key = SlotKey(provider_id, service_id, preferred_date)
        return await self.store.find_duplicate(user_id, slot_key) is not None

    async def queue(self, slot_key: SlotKey) -> list[WaitlistEntry]:
        return await self.store.find(slot_key, WaitlistStatus.ACTIVE)
