"""
Clinic waitlist service — FastAPI server

Handles:
  - Slot-freed trigger from the booking platform (appointment cancellations)
  - Patient waitlist endpoints (join, list, check, book, cancel)
  - Admin / staff endpoints (queue views, manual sweep, scheduler jobs)
  - Expiry sweeper lifecycle (APScheduler)

HIPAA note: the default store keeps patient data in memory only. For
production, back EntryStore with encrypted, access-controlled storage.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from clinic_waitlist.config import settings
from clinic_waitlist.engine import Clock, WaitlistEngine, utcnow
from clinic_waitlist.errors import (
    EntryNotFoundError,
    StaleOfferError,
    StoreUnavailableError,
    ValidationError,
)
from clinic_waitlist.models import (
    AdminEntryList,
    CancelEntryRequest,
    EntryList,
    JoinWaitlistRequest,
    SlotFreedRequest,
    SlotKey,
    WaitlistEntry,
    WaitlistStatus,
)
from clinic_waitlist.notifications import NotificationGateway, build_gateway
from clinic_waitlist.scheduler import get_scheduler, reset_scheduler
from clinic_waitlist.store import EntryStore, InMemoryEntryStore
from clinic_waitlist.sweeper import ExpirySweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(
    store: Optional[EntryStore] = None,
    gateway: Optional[NotificationGateway] = None,
    clock: Clock = utcnow,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    run_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler

    # -----------------------------------------------------------------------
    # App lifespan — wire engine + sweeper, start/stop APScheduler
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = WaitlistEngine(store or InMemoryEntryStore(), gateway or build_gateway(), clock=clock)
        sweeper = ExpirySweeper(engine)
        app.state.engine = engine
        app.state.sweeper = sweeper
        app.state.scheduler = None

        if run_scheduler:
            scheduler = get_scheduler(sweeper)
            scheduler.start()
            app.state.scheduler = scheduler
            logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
        yield
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)
            reset_scheduler()
        await engine.drain()

    app = FastAPI(
        title="Clinic Waitlist Service",
        version="1.0.0",
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(StaleOfferError)
    async def _stale_offer(request: Request, exc: StaleOfferError):
        return JSONResponse(
            status_code=409,
            content={
                "error": str(exc),
                "detail": "Offer expired, please rejoin the waitlist.",
                "entry_id": exc.entry_id,
            },
        )

    @app.exception_handler(EntryNotFoundError)
    async def _not_found(request: Request, exc: EntryNotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(StoreUnavailableError)
    async def _store_down(request: Request, exc: StoreUnavailableError):
        logger.error("Entry store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Waitlist temporarily unavailable, please retry."})

    _register_routes(app)
    return app


def get_engine(request: Request) -> WaitlistEngine:
    return request.app.state.engine


def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper


def _register_routes(app: FastAPI) -> None:
    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "clinic-waitlist", "time": utcnow().isoformat()}

    # -----------------------------------------------------------------------
    # Patient endpoints
    # -----------------------------------------------------------------------

    @app.post("/waitlist", status_code=201)
    async def join_waitlist(req: JoinWaitlistRequest, engine: WaitlistEngine = Depends(get_engine)):
        entry_id = await engine.enqueue(
            req.provider_id,
            req.service_id,
            req.preferred_date,
            req.preferred_time,
            req.patient(),
            provider_name=req.provider_name,
            service_name=req.service_name,
        )
        return {"id": entry_id}

    @app.get("/waitlist/users/{user_id}", response_model=EntryList)
    async def user_waitlist(user_id: str, engine: WaitlistEngine = Depends(get_engine)):
        entries = await engine.user_entries(user_id)
        return EntryList(count=len(entries), entries=entries)

    @app.get("/waitlist/check")
    async def check_waitlist(
        user_id: str,
        provider_id: str,
        service_id: str,
        preferred_date: date = Query(..., alias="date"),
        engine: WaitlistEngine = Depends(get_engine),
    ):
        on_waitlist = await engine.is_user_on_waitlist(user_id, provider_id, service_id, preferred_date)
        return {"on_waitlist": on_waitlist}

    @app.get("/waitlist/{entry_id}", response_model=WaitlistEntry)
    async def get_entry(entry_id: str, engine: WaitlistEngine = Depends(get_engine)):
        return await engine.get_entry(entry_id)

    @app.post("/waitlist/{entry_id}/book", response_model=WaitlistEntry)
    async def book_offer(entry_id: str, engine: WaitlistEngine = Depends(get_engine)):
        return await engine.mark_booked(entry_id)

    @app.post("/waitlist/{entry_id}/cancel", response_model=WaitlistEntry)
    async def cancel_entry(
        entry_id: str,
        req: Optional[CancelEntryRequest] = None,
        engine: WaitlistEngine = Depends(get_engine),
    ):
        req = req or CancelEntryRequest()
        cancelled = await engine.mark_cancelled(entry_id, req.reason)

        # The patient gave back an offered slot: pass it on.
        if cancelled.notified_at is not None:
            available_time = req.available_time or cancelled.offered_time or cancelled.preferred_time
            outcome = await engine.on_slot_freed(
                cancelled.provider_id,
                cancelled.service_id,
                cancelled.preferred_date,
                available_time,
            )
            logger.info(
                "Cancelled offer %s re-offered to %s",
                entry_id,
                outcome.notified_entry_id or "nobody",
            )
        return cancelled

    # -----------------------------------------------------------------------
    # Slot-freed trigger (called by the appointment cancellation flow)
    # -----------------------------------------------------------------------

    @app.post("/waitlist/notify")
    async def notify_waitlist(req: SlotFreedRequest, engine: WaitlistEngine = Depends(get_engine)):
        if not req.provider_id or not req.service_id or not req.appointment_date or not req.available_time:
            raise HTTPException(status_code=400, detail="Missing required fields")

        outcome = await engine.on_slot_freed(
            req.provider_id,
            req.service_id,
            req.appointment_date,
            req.available_time,
        )
        return {
            "notified": outcome.notified,
            "entry_id": outcome.notified_entry_id,
            "offer_pending": outcome.offer_pending,
        }

    # -----------------------------------------------------------------------
    # Admin endpoints
    # -----------------------------------------------------------------------

    @app.get("/admin/waitlist", response_model=AdminEntryList)
    async def admin_waitlist(
        status: Optional[WaitlistStatus] = None,
        engine: WaitlistEngine = Depends(get_engine),
    ):
        everything = await engine.store.list_entries()
        entries = everything if status is None else [e for e in everything if e.status == status]
        counts = {s.value: 0 for s in WaitlistStatus}
        for e in everything:
            counts[e.status.value] += 1
        return AdminEntryList(count=len(entries), entries=entries, counts=counts)

    @app.get("/admin/waitlist/queue", response_model=EntryList)
    async def admin_queue(
        provider_id: str,
        service_id: str,
        preferred_date: date = Query(..., alias="date"),
        engine: WaitlistEngine = Depends(get_engine),
    ):
        entries = await engine.queue(SlotKey(provider_id, service_id, preferred_date))
        return EntryList(count=len(entries), entries=entries)

    @app.delete("/admin/waitlist/{entry_id}")
    async def admin_delete_entry(entry_id: str, engine: WaitlistEngine = Depends(get_engine)):
        entry = await engine.store.get(entry_id)
        if entry is not None and not entry.status.is_terminal:
            # Open entries leave through /cancel so a pending offer is passed on.
            raise HTTPException(
                status_code=409,
                detail=f"Waitlist entry {entry_id} is still {entry.status.value}; cancel it first.",
            )
        if entry is None or not await engine.store.delete(entry_id):
            raise HTTPException(status_code=404, detail=f"No waitlist entry found with ID {entry_id}.")
        return {"success": True}

    @app.post("/admin/waitlist/sweep")
    async def admin_sweep(sweeper: ExpirySweeper = Depends(get_sweeper)):
        expired = await sweeper.sweep()
        return {"expired": expired}

    @app.get("/admin/scheduler/jobs")
    async def admin_scheduler_jobs(request: Request):
        scheduler = request.app.state.scheduler
        if scheduler is None:
            return {"running": False, "jobs": []}
        return {
            "running": scheduler.running,
            "jobs": [
                {
                    "id": job.id,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                    "trigger": str(job.trigger),
                }
                for job in scheduler.get_jobs()
            ],
        }


app = create_app()
