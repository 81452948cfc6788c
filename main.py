"""FastAPI application for the walk-in clinic queue.

Patients register for a serial number of the day, staff call the next
patient and complete the current appointment, and anyone can check the
estimated wait and whether the clinic is open.  Configuration comes from
environment variables (see ``config.py``); the database is reached through
SQLModel and Redis is optional, used for update events and rate limiting.
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from errors import PersistenceError, QueueError
from events import QueueEvents, get_redis
from models import VisitStatus
from repository import QueueRepository, get_engine, init_db
from schemas import (
    CallNextResponse,
    ClinicStatusOut,
    CompleteRequest,
    HistoryDay,
    ProfileOut,
    ProfileUpdate,
    RegisterRequest,
    RegisterResponse,
    TimelineEntry,
    TodaySummary,
    VisitDetail,
    VisitOut,
    WaitOut,
)
from services import QueueService

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

engine = get_engine()

app = FastAPI(title="Clinic Serial Queue")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_queue() -> QueueService:
    """Build the queue service for one request."""
    return QueueService(QueueRepository(engine), QueueEvents(get_redis()))


@app.on_event("startup")
def on_startup() -> None:
    init_db(engine)
    logger.info("Clinic queue started (database: %s)", engine.url.render_as_string(hide_password=True))


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    content: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, PersistenceError):
        content["retryable"] = exc.retryable
    else:
        logger.warning("%s %s refused: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort for anything the queue did not anticipate."""
    logger.error("Unhandled error on %s %s: %s", request.method, request.url, exc)
    logger.error("Traceback: %s", traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": type(exc).__name__},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests and responses."""
    logger.info("%s %s", request.method, request.url.path)
    response = await call_next(request)
    logger.info("%s %s -> %d", request.method, request.url.path, response.status_code)
    return response


@app.get("/health")
def health(queue: QueueService = Depends(get_queue)) -> Dict[str, Any]:
    """Health check.  Fails with 503 when the database is unreachable."""
    queue.repository.ping()
    return {
        "status": "healthy",
        "database": "ok",
        "redis": "enabled" if queue.events.enabled else "disabled",
    }


# ----- patients -----


@app.post("/visits", response_model=RegisterResponse, status_code=201)
def register_visit(request: RegisterRequest, queue: QueueService = Depends(get_queue)) -> RegisterResponse:
    """Register a walk-in patient for today's queue.

    Do not retry blindly on a 503 with ``retryable: false``; the patient may
    already be registered.
    """
    visit = queue.register(request.name, request.contact)
    # The visit is committed at this point; a failed estimate only drops the wait.
    wait: Optional[WaitOut] = None
    try:
        wait = WaitOut.model_validate(queue.estimate_wait(visit.serial_number, visit.created_at))
    except PersistenceError as exc:
        logger.warning("Wait estimate for serial #%d unavailable: %s", visit.serial_number, exc.message)
    return RegisterResponse(
        visit=VisitOut.model_validate(visit),
        wait=wait,
        message=f"Your serial number is {visit.serial_number}",
    )


@app.get("/visits/{visit_id}", response_model=VisitDetail)
def get_visit(visit_id: str, queue: QueueService = Depends(get_queue)) -> VisitDetail:
    """Return one visit, with its estimated wait while it is waiting today."""
    visit = queue.get_visit(visit_id)
    wait: Optional[WaitOut] = None
    if visit.status == VisitStatus.waiting and visit.service_day == queue.today():
        wait = WaitOut.model_validate(queue.estimate_wait(visit.serial_number))
    return VisitDetail(visit=VisitOut.model_validate(visit), wait=wait)


@app.get("/queue/wait", response_model=WaitOut)
def estimate_wait(serial: int = Query(..., ge=1), queue: QueueService = Depends(get_queue)) -> WaitOut:
    return WaitOut.model_validate(queue.estimate_wait(serial))


@app.get("/history", response_model=List[HistoryDay])
def history(queue: QueueService = Depends(get_queue)) -> List[HistoryDay]:
    return [
        HistoryDay(day=day, visits=[VisitOut.model_validate(v) for v in visits])
        for day, visits in queue.history()
    ]


# ----- staff -----


@app.get("/queue/today", response_model=TodaySummary)
def today(queue: QueueService = Depends(get_queue)) -> TodaySummary:
    summary = queue.today_summary()
    current = summary["current"]
    return TodaySummary(
        day=summary["day"],
        waiting_count=summary["waiting_count"],
        completed_count=summary["completed_count"],
        next_serial_number=summary["next_serial_number"],
        current=VisitOut.model_validate(current) if current else None,
        clinic_status=ClinicStatusOut.model_validate(summary["clinic_status"]),
    )


@app.get("/queue/current", response_model=Optional[VisitOut])
def current_visit(queue: QueueService = Depends(get_queue)) -> Optional[VisitOut]:
    visit = queue.current()
    return VisitOut.model_validate(visit) if visit else None


@app.post("/queue/call-next", response_model=CallNextResponse)
def call_next(queue: QueueService = Depends(get_queue)) -> CallNextResponse:
    """Call the lowest waiting serial of today.  409 while someone is in progress."""
    visit = queue.call_next()
    if visit is None:
        return CallNextResponse(visit=None, message="No waiting patients")
    return CallNextResponse(
        visit=VisitOut.model_validate(visit),
        message=f"Now serving {visit.name} (Serial #{visit.serial_number})",
    )


@app.post("/queue/complete", response_model=VisitOut)
def complete(request: Optional[CompleteRequest] = None, queue: QueueService = Depends(get_queue)) -> VisitOut:
    """Complete the given visit, or the current one when no id is sent."""
    visit_id = request.visit_id if request else None
    return VisitOut.model_validate(queue.complete(visit_id))


@app.get("/clinic/status", response_model=ClinicStatusOut)
def clinic_status(queue: QueueService = Depends(get_queue)) -> ClinicStatusOut:
    return ClinicStatusOut.model_validate(queue.clinic_status())


@app.get("/profile", response_model=ProfileOut)
def read_profile(queue: QueueService = Depends(get_queue)) -> ProfileOut:
    return ProfileOut.from_model(queue.profile())


@app.put("/profile", response_model=ProfileOut)
def update_profile(request: ProfileUpdate, queue: QueueService = Depends(get_queue)) -> ProfileOut:
    return ProfileOut.from_model(queue.update_profile(request.to_changes()))


@app.get("/admin/timeline", response_model=List[TimelineEntry])
def admin_timeline(limit: int = Query(50, ge=1, le=500), queue: QueueService = Depends(get_queue)) -> List[TimelineEntry]:
    """Most recent queue events, newest first."""
    return [
        TimelineEntry(
            event_type=event.event_type.value,
            at=event.at,
            visit_id=visit.id,
            serial_number=visit.serial_number,
            name=visit.name,
        )
        for event, visit in queue.timeline(limit)
    ]


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    logger.info("Starting server on port %d", port)
    uvicorn.run(app, host="0.0.0.0", port=port)
