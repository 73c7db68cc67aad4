"""
Live tracker control: status, start/stop of the periodic cycle, manual run.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query

from campaign_tracker.services.live_tracker import get_instance

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/live-tracker", tags=["live-tracker"])

_manual_runs: set[asyncio.Task] = set()


@router.get("/status")
async def tracker_status():
    return get_instance().status()


@router.post("/start")
async def start_tracker():
    get_instance().start(force=True)
    return get_instance().status()


@router.post("/stop")
async def stop_tracker():
    get_instance().stop()
    return get_instance().status()


@router.post("/run")
async def run_tracker_now(wait: bool = Query(default=False)):
    """Trigger one cycle now. Without `wait` the cycle runs in the background."""
    tracker = get_instance()
    if wait:
        return await tracker.run_cycle()
    if tracker.status()["is_running"]:
        return {"started": False, "reason": "already_running", "status": tracker.status()}
    task = asyncio.create_task(tracker.run_cycle())
    _manual_runs.add(task)
    task.add_done_callback(_manual_runs.discard)
    logger.info("[live_tracker] Manual cycle triggered")
    return {"started": True, "status": tracker.status()}
