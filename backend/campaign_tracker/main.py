from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import (
    AccessDeniedError,
    AlreadyRunningError,
    CampaignTrackerError,
    DuplicateResourceError,
    NotFoundError,
    ValidationError,
)
from .routes_campaigns import router as campaigns_router
from .routes_ops import router as ops_router
from .routes_posts import router as posts_router
from .routes_scrape import router as scrape_router
from .routes_shared import router as shared_router
from .routes_tracker import router as tracker_router
from .settings import get_settings

logger = logging.getLogger("campaign_tracker")

app = FastAPI(title="Campaign Tracker")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(DuplicateResourceError)
async def duplicate_handler(request: Request, exc: DuplicateResourceError):
    return JSONResponse(status_code=409, content={"detail": exc.message, "existing_id": exc.existing_id})


@app.exception_handler(AlreadyRunningError)
async def already_running_handler(request: Request, exc: AlreadyRunningError):
    return JSONResponse(status_code=409, content={"detail": exc.message, "job_id": exc.job_id})


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError):
    return JSONResponse(status_code=401, content={"detail": exc.message})


@app.exception_handler(CampaignTrackerError)
async def domain_error_handler(request: Request, exc: CampaignTrackerError):
    logger.warning("Unmapped domain error on %s %s: %s", request.method, request.url, exc.message)
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(campaigns_router)
app.include_router(posts_router)
app.include_router(scrape_router)
app.include_router(tracker_router)
app.include_router(shared_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Finalize jobs interrupted by the last shutdown, then start the live tracker."""
    from .db import AsyncSessionLocal
    from .services.live_tracker import get_instance
    from .services.recovery import reconcile_interrupted_jobs

    # Celery workers outlive API restarts; only their stuck jobs are ours to finalize.
    older_than = timedelta(minutes=settings.stuck_job_minutes) if settings.celery_enabled else None
    async with AsyncSessionLocal() as session:
        report = await reconcile_interrupted_jobs(session, older_than)
    if report["jobs_reconciled"]:
        logger.warning("Recovered %d interrupted scrape jobs on startup", report["jobs_reconciled"])

    tracker = get_instance()
    tracker.configure(session_factory=AsyncSessionLocal)
    if tracker.start():
        logger.info("Live tracker started on app startup")


@app.on_event("shutdown")
async def shutdown_event():
    from .services.live_tracker import get_instance
    get_instance().stop()
    logger.info("Live tracker stopped on app shutdown")
