"""
Waitlist data model.

A WaitlistEntry is one patient's standing request for one slot key
(provider, service, date). Entries move through

    active -> notified -> booked | expired
    active | notified -> cancelled

and never return to active. Terminal entries are kept for audit.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


class WaitlistStatus(str, Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    BOOKED = "booked"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WaitlistStatus.BOOKED, WaitlistStatus.EXPIRED, WaitlistStatus.CANCELLED}
)
OPEN_STATUSES = frozenset({WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED})


class SlotKey(NamedTuple):
    """Unit of mutual exclusion: one FIFO queue per provider/service/day."""

    provider_id: str
    service_id: str
    preferred_date: date

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.service_id}/{self.preferred_date.isoformat()}"


class Patient(BaseModel):
    user_id: str
    user_name: str
    user_email: str
    user_phone: Optional[str] = None


class WaitlistEntry(BaseModel):
    id: str = ""
    user_id: str
    user_name: str
    user_email: str
    user_phone: Optional[str] = None
    provider_id: str
    provider_name: Optional[str] = None
    service_id: str
    service_name: Optional[str] = None
    preferred_date: date
    preferred_time: str
    status: WaitlistStatus = WaitlistStatus.ACTIVE
    created_at: datetime
    updated_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    offered_time: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 1

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.provider_id, self.service_id, self.preferred_date)

    @property
    def queue_position_key(self) -> tuple[datetime, str]:
        """FIFO ordering: join time, ties broken by id."""
        return (self.created_at, self.id)

    def offer_open(self, now: datetime) -> bool:
        return (
            self.status == WaitlistStatus.NOTIFIED
            and self.expires_at is not None
            and now < self.expires_at
        )


class SlotFreedOutcome(BaseModel):
    """Result of one slot-freed dispatch."""

    provider_id: str
    service_id: str
    preferred_date: date
    notified_entry_id: Optional[str] = None
    offer_pending: bool = False   # another patient already holds an offer for this slot
    attempts: int = 0

    @property
    def notified(self) -> bool:
        return self.notified_entry_id is not None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class JoinWaitlistRequest(BaseModel):
    user_id: str
    user_name: str
    user_email: str
    user_phone: Optional[str] = None
    provider_id: str
    provider_name: Optional[str] = None
    service_id: str
    service_name: Optional[str] = None
    preferred_date: date
    preferred_time: str

    def patient(self) -> Patient:
        return Patient(
            user_id=self.user_id,
            user_name=self.user_name,
            user_email=self.user_email,
            user_phone=self.user_phone,
        )


class CancelEntryRequest(BaseModel):
    reason: Optional[str] = None
    # When set and the entry held an offer, the slot is re-offered to the next patient.
    available_time: Optional[str] = None


class SlotFreedRequest(BaseModel):
    # Optional so that an incomplete body gets the 400 "Missing required fields" reply.
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    appointment_date: Optional[date] = None
    available_time: Optional[str] = None


class EntryList(BaseModel):
    count: int
    entries: list[WaitlistEntry] = Field(default_factory=list)


class AdminEntryList(EntryList):
    # Per-status totals over the whole waitlist, regardless of the filter.
    counts: dict[str, int] = Field(default_factory=dict)
