"""
Shared pytest fixtures.

Everything runs against the in-memory store with a controllable clock and
a recording gateway, so no Twilio/Resend credentials are needed.
"""

import os
from datetime import date, datetime, timedelta, timezone

import pytest

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DRY_RUN", "true")

from clinic_waitlist.engine import WaitlistEngine  # noqa: E402
from clinic_waitlist.errors import GatewayError  # noqa: E402
from clinic_waitlist.models import Patient  # noqa: E402
from clinic_waitlist.notifications import NotificationGateway  # noqa: E402
from clinic_waitlist.store import InMemoryEntryStore  # noqa: E402
from clinic_waitlist.sweeper import ExpirySweeper  # noqa: E402

# Noon UTC is still the same calendar day in the clinic's time zone.
T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
SLOT_DATE = date(2026, 10, 26)
PROVIDER = "prov-1"
SERVICE = "cleaning"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.calls = []

    async def notify(self, entry, offered_time, expires_at):
        self.calls.append((entry.id, offered_time, expires_at))


class FailingGateway(NotificationGateway):
    def __init__(self):
        self.attempts = 0

    async def notify(self, entry, offered_time, expires_at):
        self.attempts += 1
        raise GatewayError("smtp relay down")


def make_patient(n) -> Patient:
    return Patient(
        user_id=f"user-{n}",
        user_name=f"Patient {n}",
        user_email=f"patient{n}@example.com",
        user_phone=f"+1555{n:07d}",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEntryStore()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def engine(store, gateway, clock):
    return WaitlistEngine(store, gateway, clock=clock, tz="America/New_York")


@pytest.fixture
def sweeper(engine):
    return ExpirySweeper(engine, cascade=True)


@pytest.fixture
def join(engine, clock):
    """Enqueue patient n for the default slot key, one second after the previous join."""

    async def _join(n, slot_date=SLOT_DATE, provider=PROVIDER, service=SERVICE, time="10:00"):
        entry_id = await engine.enqueue(provider, service, slot_date, time, make_patient(n))
        clock.advance(seconds=1)
        return entry_id

    return _join
