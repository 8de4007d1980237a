"""
Entry store — durable keyed storage for waitlist entries.

The engine only needs the narrow contract in EntryStore. In production this
is backed by the clinic's document database; every mutation goes through
conditional_update, which succeeds only if the entry still carries the
version the caller read (optimistic concurrency).

InMemoryEntryStore is the reference implementation used by the API server in
single-instance deployments and by the test-suite.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from clinic_waitlist.errors import ConflictError, EntryNotFoundError
from clinic_waitlist.models import (
    OPEN_STATUSES,
    SlotKey,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)

# Fields owned by the store; a patch can never overwrite them.
_PROTECTED_FIELDS = {"id", "version", "created_at", "user_id", "provider_id", "service_id", "preferred_date"}


class EntryStore(ABC):
    @abstractmethod
    async def insert(self, entry: WaitlistEntry) -> str:
        """Persist a new entry and return its assigned id."""

    @abstractmethod
    async def insert_unique(self, entry: WaitlistEntry) -> tuple[str, bool]:
        """
        Insert entry unless the patient already holds an active or notified
        entry for its slot key. The check and the write are one atomic step.
        Returns (id, created); id is the existing entry's when created is False.
        """

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[WaitlistEntry]:
        ...

    @abstractmethod
    async def find(
        self,
        slot_key: SlotKey,
        status: WaitlistStatus,
        limit: Optional[int] = None,
    ) -> list[WaitlistEntry]:
        """Entries of a slot key in one status, oldest first (created_at, then id)."""

    @abstractmethod
    async def find_expired(self, now: datetime) -> list[WaitlistEntry]:
        """Notified entries whose offer window closed at or before now."""

    @abstractmethod
    async def find_duplicate(self, user_id: str, slot_key: SlotKey) -> Optional[str]:
        """Id of the patient's active or notified entry for this slot key, if any."""

    @abstractmethod
    async def conditional_update(
        self,
        entry_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> WaitlistEntry:
        """
        Apply patch only if the stored entry is still at expected_version.

        Raises ConflictError when the version moved on, or when the patch moves
        the entry to notified while another entry of the same slot key is
        already notified. Raises EntryNotFoundError for unknown ids.
        Returns the updated entry with its new version.
        """

    @abstractmethod
    async def find_by_user(
        self,
        user_id: str,
        statuses: Iterable[WaitlistStatus] = OPEN_STATUSES,
    ) -> list[WaitlistEntry]:
        ...

    @abstractmethod
    async def list_entries(self, status: Optional[WaitlistStatus] = None) -> list[WaitlistEntry]:
        ...

    @abstractmethod
    async def delete(self, entry_id: str) -> bool:
        ...


def _sorted_fifo(entries: Iterable[WaitlistEntry]) -> list[WaitlistEntry]:
    return sorted(entries, key=lambda e: e.queue_position_key)


class InMemoryEntryStore(EntryStore):
    """
    Dict-backed store. Writes are atomic under a lock; reads hand out copies
    and yield to the event loop first so concurrent callers interleave the
    way they would against a remote database.
    """

    def __init__(self) -> None:
        self._entries: dict[str, WaitlistEntry] = {}
        self._lock = threading.Lock()

    def _snapshot(self, predicate) -> list[WaitlistEntry]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._entries.values() if predicate(e)]

    async def insert(self, entry: WaitlistEntry) -> str:
        await asyncio.sleep(0)
        with self._lock:
            entry_id = entry.id or uuid.uuid4().hex[:12].upper()
            if entry_id in self._entries:
                raise ConflictError(entry_id, detail=f"Entry {entry_id} already exists")
            self._entries[entry_id] = entry.model_copy(update={"id": entry_id, "version": 1}, deep=True)
        return entry_id

    async def insert_unique(self, entry: WaitlistEntry) -> tuple[str, bool]:
        await asyncio.sleep(0)
        with self._lock:
            holder = _sorted_fifo(
                e
                for e in self._entries.values()
                if e.user_id == entry.user_id
                and e.slot_key == entry.slot_key
                and e.status in OPEN_STATUSES
            )
            if holder:
                return holder[0].id, False
            entry_id = entry.id or uuid.uuid4().hex[:12].upper()
            self._entries[entry_id] = entry.model_copy(update={"id": entry_id, "version": 1}, deep=True)
        return entry_id, True

    async def get(self, entry_id: str) -> Optional[WaitlistEntry]:
        await asyncio.sleep(0)
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    async def find(
        self,
        slot_key: SlotKey,
        status: WaitlistStatus,
        limit: Optional[int] = None,
    ) -> list[WaitlistEntry]:
        await asyncio.sleep(0)
        matches = _sorted_fifo(
            self._snapshot(lambda e: e.slot_key == slot_key and e.status == status)
        )
        return matches[:limit] if limit is not None else matches

    async def find_expired(self, now: datetime) -> list[WaitlistEntry]:
        await asyncio.sleep(0)
        return sorted(
            self._snapshot(
                lambda e: e.status == WaitlistStatus.NOTIFIED
                and e.expires_at is not None
                and e.expires_at <= now
            ),
            key=lambda e: (e.expires_at, e.id),
        )

    async def find_duplicate(self, user_id: str, slot_key: SlotKey) -> Optional[str]:
        await asyncio.sleep(0)
        matches = _sorted_fifo(
            self._snapshot(
                lambda e: e.user_id == user_id
                and e.slot_key == slot_key
                and e.status in OPEN_STATUSES
            )
        )
        return matches[0].id if matches else None

    async def conditional_update(
        self,
        entry_id: str,
        expected_version: int,
        patch: dict[str, Any],
    ) -> WaitlistEntry:
        protected = _PROTECTED_FIELDS.intersection(patch)
        if protected:
            raise ValueError(f"Cannot patch store-owned fields: {sorted(protected)}")

        await asyncio.sleep(0)
        with self._lock:
            current = self._entries.get(entry_id)
            if current is None:
                raise EntryNotFoundError(entry_id)
            if current.version != expected_version:
                raise ConflictError(
                    entry_id,
                    detail=(
                        f"Entry {entry_id} is at version {current.version}, "
                        f"expected {expected_version}"
                    ),
                )
            if patch.get("status") == WaitlistStatus.NOTIFIED:
                holder = next(
                    (
                        e.id
                        for e in self._entries.values()
                        if e.id != entry_id
                        and e.slot_key == current.slot_key
                        and e.status == WaitlistStatus.NOTIFIED
                    ),
                    None,
                )
                if holder is not None:
                    raise ConflictError(
                        entry_id,
                        reason=ConflictError.SLOT_OFFER_PENDING,
                        detail=f"Slot {current.slot_key} is already offered to entry {holder}",
                    )

            updated = current.model_copy(
                update={**patch, "version": current.version + 1}, deep=True
            )
            self._entries[entry_id] = updated
            return updated.model_copy(deep=True)

    async def find_by_user(
        self,
        user_id: str,
        statuses: Iterable[WaitlistStatus] = OPEN_STATUSES,
    ) -> list[WaitlistEntry]:
        await asyncio.sleep(0)
        wanted = set(statuses)
        return _sorted_fifo(self._snapshot(lambda e: e.user_id == user_id and e.status in wanted))

    async def list_entries(self, status: Optional[WaitlistStatus] = None) -> list[WaitlistEntry]:
        await asyncio.sleep(0)
        return _sorted_fifo(self._snapshot(lambda e: status is None or e.status == status))

    async def delete(self, entry_id: str) -> bool:
        await asyncio.sleep(0)
        with self._lock:
            removed = self._entries.pop(entry_id, None)
        if removed is not None:
            logger.info("Waitlist entry %s deleted", entry_id)
        return removed is not None
