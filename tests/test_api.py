"""
Tests for the FastAPI surface

Each test builds its own app around an in-memory store, a fake clock and a
recording gateway; the scheduler is not started.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from clinic_waitlist.main import create_app
from clinic_waitlist.store import InMemoryEntryStore

from conftest import PROVIDER, SERVICE, SLOT_DATE, T0, FakeClock, RecordingGateway


@pytest.fixture
def api():
    store = InMemoryEntryStore()
    gateway = RecordingGateway()
    clock = FakeClock()
    app = create_app(store=store, gateway=gateway, clock=clock, start_scheduler=False)
    with TestClient(app) as client:
        client.gateway = gateway
        client.clock = clock
        yield client


def _join(client, n, **overrides):
    body = {
        "user_id": f"user-{n}",
        "user_name": f"Patient {n}",
        "user_email": f"patient{n}@example.com",
        "provider_id": PROVIDER,
        "provider_name": "Dr. Lee",
        "service_id": SERVICE,
        "service_name": "Cleaning",
        "preferred_date": SLOT_DATE.isoformat(),
        "preferred_time": "10:00",
    }
    body.update(overrides)
    resp = client.post("/waitlist", json=body)
    client.clock.advance(seconds=1)
    return resp


def _free_slot(client, time="10:00"):
    return client.post(
        "/waitlist/notify",
        json={
            "provider_id": PROVIDER,
            "service_id": SERVICE,
            "appointment_date": SLOT_DATE.isoformat(),
            "available_time": time,
        },
    )


def test_health(api):
    resp = api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


class TestJoin:
    def test_join_returns_id(self, api):
        resp = _join(api, 1)
        assert resp.status_code == 201
        entry = api.get(f"/waitlist/{resp.json()['id']}").json()
        assert entry["status"] == "active"
        assert entry["service_name"] == "Cleaning"

    def test_join_twice_is_idempotent(self, api):
        first = _join(api, 1).json()["id"]
        second = _join(api, 1).json()["id"]
        assert first == second

    def test_past_date_rejected(self, api):
        resp = _join(api, 1, preferred_date=(T0.date() - timedelta(days=3)).isoformat())
        assert resp.status_code == 400
        assert "in the past" in resp.json()["error"]

    def test_missing_field_is_unprocessable(self, api):
        resp = api.post("/waitlist", json={"user_id": "u1"})
        assert resp.status_code == 422

    def test_user_entries_and_check(self, api):
        entry_id = _join(api, 1).json()["id"]

        listing = api.get("/waitlist/users/user-1").json()
        assert listing["count"] == 1
        assert listing["entries"][0]["id"] == entry_id

        params = {"user_id": "user-1", "provider_id": PROVIDER, "service_id": SERVICE, "date": SLOT_DATE.isoformat()}
        assert api.get("/waitlist/check", params=params).json() == {"on_waitlist": True}
        params["user_id"] = "user-2"
        assert api.get("/waitlist/check", params=params).json() == {"on_waitlist": False}

    def test_unknown_entry(self, api):
        assert api.get("/waitlist/NOPE").status_code == 404


class TestSlotFreed:
    def test_missing_fields(self, api):
        resp = api.post("/waitlist/notify", json={"provider_id": PROVIDER})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing required fields"

    def test_empty_waitlist(self, api):
        resp = _free_slot(api)
        assert resp.status_code == 200
        assert resp.json() == {"notified": False, "entry_id": None, "offer_pending": False}

    def test_notifies_first_in_line(self, api):
        first = _join(api, 1).json()["id"]
        _join(api, 2)

        body = _free_slot(api, "14:00").json()
        assert body["notified"] is True
        assert body["entry_id"] == first

        entry = api.get(f"/waitlist/{first}").json()
        assert entry["status"] == "notified"
        assert entry["offered_time"] == "14:00"

    def test_pending_offer_reported(self, api):
        _join(api, 1)
        _join(api, 2)
        _free_slot(api)
        body = _free_slot(api, "11:00").json()
        assert body["notified"] is False
        assert body["offer_pending"] is True

    def test_gateway_called_by_shutdown(self):
        gateway = RecordingGateway()
        app = create_app(store=InMemoryEntryStore(), gateway=gateway, clock=FakeClock(), start_scheduler=False)
        with TestClient(app) as client:
            client.clock = app.state.engine.clock
            entry_id = _join(client, 1).json()["id"]
            _free_slot(client, "09:00")
        # Lifespan shutdown waits for in-flight notifications.
        assert [call[:2] for call in gateway.calls] == [(entry_id, "09:00")]


class TestBookAndCancel:
    def test_book_offer(self, api):
        entry_id = _join(api, 1).json()["id"]
        _free_slot(api)

        resp = api.post(f"/waitlist/{entry_id}/book")
        assert resp.status_code == 200
        assert resp.json()["status"] == "booked"

        again = api.post(f"/waitlist/{entry_id}/book")
        assert again.status_code == 409
        assert again.json()["detail"] == "Offer expired, please rejoin the waitlist."

    def test_book_lapsed_offer(self, api):
        entry_id = _join(api, 1).json()["id"]
        _free_slot(api)
        api.clock.advance(hours=25)

        assert api.post(f"/waitlist/{entry_id}/book").status_code == 409

    def test_book_unknown(self, api):
        assert api.post("/waitlist/NOPE/book").status_code == 404

    def test_cancel_active_entry(self, api):
        entry_id = _join(api, 1).json()["id"]
        resp = api.post(f"/waitlist/{entry_id}/cancel", json={"reason": "Feeling better"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancellation_reason"] == "Feeling better"

    def test_cancel_without_body(self, api):
        entry_id = _join(api, 1).json()["id"]
        resp = api.post(f"/waitlist/{entry_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["cancellation_reason"] == "Cancelled by user"

    def test_cancelling_offer_passes_slot_on(self, api):
        first = _join(api, 1).json()["id"]
        second = _join(api, 2).json()["id"]
        _free_slot(api, "15:30")

        resp = api.post(f"/waitlist/{first}/cancel", json={})
        assert resp.status_code == 200

        entry = api.get(f"/waitlist/{second}").json()
        assert entry["status"] == "notified"
        assert entry["offered_time"] == "15:30"

    def test_cancel_twice_conflicts(self, api):
        entry_id = _join(api, 1).json()["id"]
        api.post(f"/waitlist/{entry_id}/cancel")
        assert api.post(f"/waitlist/{entry_id}/cancel").status_code == 409


class TestAdmin:
    def test_list_by_status(self, api):
        _join(api, 1)
        cancelled = _join(api, 2).json()["id"]
        api.post(f"/waitlist/{cancelled}/cancel")

        assert api.get("/admin/waitlist").json()["count"] == 2
        only_active = api.get("/admin/waitlist", params={"status": "active"}).json()
        assert only_active["count"] == 1
        assert api.get("/admin/waitlist", params={"status": "bogus"}).status_code == 422

    def test_list_reports_counts_per_status(self, api):
        _join(api, 1)
        _join(api, 2)
        cancelled = _join(api, 3).json()["id"]
        api.post(f"/waitlist/{cancelled}/cancel")
        _free_slot(api)

        body = api.get("/admin/waitlist", params={"status": "active"}).json()
        assert body["count"] == 1
        assert body["counts"] == {"active": 1, "notified": 1, "booked": 0, "expired": 0, "cancelled": 1}

    def test_queue(self, api):
        ids = [_join(api, n).json()["id"] for n in (1, 2, 3)]
        params = {"provider_id": PROVIDER, "service_id": SERVICE, "date": SLOT_DATE.isoformat()}
        queue = api.get("/admin/waitlist/queue", params=params).json()
        assert [e["id"] for e in queue["entries"]] == ids

    def test_delete(self, api):
        entry_id = _join(api, 1).json()["id"]
        api.post(f"/waitlist/{entry_id}/cancel")
        assert api.delete(f"/admin/waitlist/{entry_id}").json() == {"success": True}
        assert api.delete(f"/admin/waitlist/{entry_id}").status_code == 404

    def test_delete_refuses_open_entries(self, api):
        offered = _join(api, 1).json()["id"]
        waiting = _join(api, 2).json()["id"]
        _free_slot(api)

        for entry_id in (offered, waiting):
            resp = api.delete(f"/admin/waitlist/{entry_id}")
            assert resp.status_code == 409

        assert api.get(f"/waitlist/{offered}").json()["status"] == "notified"
        assert api.get(f"/waitlist/{waiting}").json()["status"] == "active"

    def test_manual_sweep_cascades(self, api):
        first = _join(api, 1).json()["id"]
        second = _join(api, 2).json()["id"]
        _free_slot(api)
        api.clock.advance(hours=25)

        assert api.post("/admin/waitlist/sweep").json() == {"expired": 1}
        assert api.get(f"/waitlist/{first}").json()["status"] == "expired"
        assert api.get(f"/waitlist/{second}").json()["status"] == "notified"

    def test_scheduler_jobs_when_disabled(self, api):
        assert api.get("/admin/scheduler/jobs").json() == {"running": False, "jobs": []}


def test_store_outage_is_503():
    from clinic_waitlist.errors import StoreUnavailableError

    class DownStore(InMemoryEntryStore):
        async def find_by_user(self, user_id, statuses=()):
            raise StoreUnavailableError("connection refused")

    app = create_app(store=DownStore(), gateway=RecordingGateway(), clock=FakeClock(), start_scheduler=False)
    with TestClient(app) as client:
        resp = client.get("/waitlist/users/user-1")
    assert resp.status_code == 503
