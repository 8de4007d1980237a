"""
Waitlist error taxonomy.

Only ValidationError, StaleOfferError and EntryNotFoundError are meant to reach
patients; ConflictError is absorbed inside the engine and the sweeper.
"""

from __future__ import annotations

from typing import Optional


class WaitlistError(Exception):
    """Base class for every waitlist failure."""


class ValidationError(WaitlistError):
    """Bad input to enqueue (missing field, date in the past). Nothing is persisted."""


class ConflictError(WaitlistError):
    """A conditional write lost a race: the entry changed since it was read."""

    # The slot already has a pending offer, so no entry of it may become notified.
    SLOT_OFFER_PENDING = "slot_offer_pending"
    VERSION_MISMATCH = "version_mismatch"

    def __init__(self, entry_id: str, reason: str = VERSION_MISMATCH, detail: Optional[str] = None):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(detail or f"Conditional update of {entry_id} failed ({reason})")


class StaleOfferError(WaitlistError):
    """The entry is no longer in a state that allows the requested transition."""

    def __init__(self, entry_id: str, message: str):
        self.entry_id = entry_id
        super().__init__(message)


class EntryNotFoundError(WaitlistError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"No waitlist entry found with ID {entry_id}.")


class StoreUnavailableError(WaitlistError):
    """The entry store could not be reached. Safe to retry the whole operation."""


class GatewayError(WaitlistError):
    """A notification could not be delivered. Never affects engine state."""
