"""
WSF Ferry Tracker Service (FastAPI)

Purpose
=======
Poll the Washington State Ferries REST APIs, keep a normalized in-memory view
of vessels, terminals and today's sailings, record per-sailing vehicle
capacity, and serve it all as JSON to the browser client.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx sqlalchemy
- WSDOT_API_KEY must be set for the pollers to start.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException

from crossing_storage import DEFAULT_DATABASE_URL, CrossingStorage
from ferry_cache import FerryCache
from live_refresher import LiveRefresher
from schedule_refresher import ScheduleRefresher
from terminal_overrides import DEFAULT_TERMINAL_CAMERAS_PATH, load_terminal_cameras
from wsf_client import WSFClient

# ---------------------------
# Config
# ---------------------------
DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "").lower() in {"1", "true", "yes"}
LONG_REFRESH_S = float(os.getenv("LONG_REFRESH_S", "30"))
SHORT_REFRESH_S = float(os.getenv("SHORT_REFRESH_S", "10"))
TERMINAL_CAMERAS_PATH = Path(os.getenv("TERMINAL_CAMERAS_PATH", str(DEFAULT_TERMINAL_CAMERAS_PATH)))

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="WSF Ferry Tracker")
app.state.ferry_cache = FerryCache()
app.state.schedule_refresher = None
app.state.live_refresher = None

api = APIRouter(prefix="/api")


def _cache() -> FerryCache:
    return app.state.ferry_cache


async def _poll_forever(name: str, interval_s: float, cycle: Callable[[], Awaitable[Any]]) -> None:
    """Call ``cycle`` every ``interval_s`` seconds until cancelled.

    Overlap is handled by the refreshers themselves: a tick that lands while
    the previous cycle is still running is skipped there.
    """
    await asyncio.sleep(0.1)
    while True:
        start = time.time()
        try:
            await cycle()
        except Exception as exc:
            print(f"[{name}] error: {exc}")
        dt = max(0.5, interval_s - (time.time() - start))
        await asyncio.sleep(dt)


@app.on_event("startup")
async def startup() -> None:
    try:
        client = WSFClient.from_env()
    except RuntimeError as exc:
        print(f"[wsf] client not configured: {exc}")
        app.state.wsf_client = None
        return

    storage = CrossingStorage(DATABASE_URL, echo=DATABASE_ECHO)
    try:
        storage.create_all()
    except Exception as exc:
        print(f"[crossings] failed to initialize store at {DATABASE_URL}: {exc}")
    cameras = load_terminal_cameras(TERMINAL_CAMERAS_PATH)

    cache = _cache()
    schedule_refresher = ScheduleRefresher(cache, client, storage, cameras=cameras)
    live_refresher = LiveRefresher(cache, client, storage)
    app.state.wsf_client = client
    app.state.crossing_storage = storage
    app.state.schedule_refresher = schedule_refresher
    app.state.live_refresher = live_refresher
    app.state.poll_tasks = [
        asyncio.create_task(_poll_forever("long", LONG_REFRESH_S, schedule_refresher.run_cycle)),
        asyncio.create_task(_poll_forever("short", SHORT_REFRESH_S, live_refresher.run_cycle)),
    ]


@app.on_event("shutdown")
async def shutdown() -> None:
    for task in getattr(app.state, "poll_tasks", []):
        task.cancel()
    client = getattr(app.state, "wsf_client", None)
    if client is not None:
        await client.aclose()
    storage = getattr(app.state, "crossing_storage", None)
    if storage is not None:
        storage.dispose()


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    errors: Dict[str, Optional[Dict[str, Any]]] = {}
    running: Dict[str, bool] = {}
    for name in ("schedule_refresher", "live_refresher"):
        refresher = getattr(app.state, name, None)
        running[name] = refresher is not None and refresher.is_running
        if refresher is None or not refresher.last_error:
            errors[name] = None
        else:
            errors[name] = {"error": refresher.last_error, "ts": refresher.last_error_ts}
    configured = getattr(app.state, "wsf_client", None) is not None
    ok = configured and not any(errors.values())
    return {
        "ok": ok,
        "configured": configured,
        "running": running,
        "last_errors": errors,
        "cache": _cache().stats(),
    }


# ---------------------------
# REST: Vessels / Terminals / Schedule
# ---------------------------
@api.get("/vessels")
async def list_vessels():
    return await _cache().get_vessels()


@api.get("/vessels/{vessel_id}")
async def vessel_info(vessel_id: int):
    vessel = await _cache().get_vessel(vessel_id)
    if vessel is None:
        raise HTTPException(404, "vessel not found")
    return vessel


@api.get("/terminals")
async def list_terminals():
    return await _cache().get_terminals()


@api.get("/terminals/{terminal_id}")
async def terminal_info(terminal_id: int):
    terminal = await _cache().get_terminal(terminal_id)
    if terminal is None:
        raise HTTPException(404, "terminal not found")
    return terminal


@api.get("/schedule/{departing_id}/{arriving_id}")
async def route_schedule(departing_id: int, arriving_id: int):
    schedule = await _cache().get_schedule(departing_id, arriving_id)
    return {
        "schedule": [crossing.to_dict() for crossing in schedule],
        "timestamp": time.time(),
    }


app.include_router(api)
