"""HTTP client for the waitlist service — used by the booking platform and by cron."""

from __future__ import annotations

from datetime import date

import httpx

from clinic_waitlist.config import settings


def _url(path: str) -> str:
    return f"{settings.server_base_url.rstrip('/')}{path}"


def report_slot_freed(provider_id: str, service_id: str, appointment_date: date, available_time: str) -> dict:
    """Tell the waitlist service an appointment slot was just cancelled."""
    with httpx.Client(timeout=30) as client:
        resp = client.post(
            _url("/waitlist/notify"),
            json={
                "provider_id": provider_id,
                "service_id": service_id,
                "appointment_date": appointment_date.isoformat(),
                "available_time": available_time,
            },
        )
        resp.raise_for_status()
        return resp.json()


def trigger_sweep() -> int:
    """Run one expiry sweep on the server. Returns how many offers expired."""
    with httpx.Client(timeout=60) as client:
        resp = client.post(_url("/admin/waitlist/sweep"))
        resp.raise_for_status()
        return resp.json()["expired"]
