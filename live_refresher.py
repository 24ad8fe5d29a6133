"""
Short-cycle refresh: live vessel timing and per-sailing vehicle capacity.

Every ``SHORT_REFRESH_S`` seconds:

- timing    - vessel positions, dock state and departure delay
- capacity  - drive-up/reservable space per sailing, written to the store
- estimates - each sailing's provisional capacity from the same slot one
              week earlier
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from crossing_storage import CrossingStorage
from ferry_cache import FerryCache
from ferry_models import Capacity, Crossing, has_passed, week_before
from wsf_client import WSFClient, parse_wsf_date


def timing_update(
    raw: Dict[str, Any],
    previous: Optional[Dict[str, Any]],
    now: float,
) -> Dict[str, Any]:
    """Dynamic vessel fields from one ``vessellocations`` record.

    The departure delay sticks across polls that carry no departure data.
    ``dockedTime`` is stamped on the undocked -> docked transition only and
    kept until the vessel leaves the dock again.
    """
    previous = previous or {}
    departed_time = parse_wsf_date(raw.get("LeftDock"))
    scheduled_time = parse_wsf_date(raw.get("ScheduledDeparture"))
    if departed_time is not None and scheduled_time is not None:
        departure_delta = departed_time - scheduled_time
    else:
        departure_delta = previous.get("departureDelta")

    is_at_dock = bool(raw.get("AtDock"))
    if is_at_dock and not previous.get("isAtDock"):
        docked_time = int(now)
    elif is_at_dock:
        docked_time = previous.get("dockedTime")
    else:
        docked_time = None

    return {
        "arrivingTerminalId": raw.get("ArrivingTerminalID"),
        "departingTerminalId": raw.get("DepartingTerminalID"),
        "departedTime": departed_time,
        "departureDelta": departure_delta,
        "dockedTime": docked_time,
        "estimatedArrivalTime": parse_wsf_date(raw.get("Eta")),
        "heading": raw.get("Heading"),
        "id": raw["VesselID"],
        "isAtDock": is_at_dock,
        "location": {
            "latitude": raw.get("Latitude"),
            "longitude": raw.get("Longitude"),
        },
        "mmsi": raw.get("Mmsi"),
        "scheduledDepartureTime": scheduled_time,
        "speed": raw.get("Speed"),
        "info": {"crossing": raw.get("EtaBasis")},
    }


def capacity_readings(
    raw_terminals: List[Dict[str, Any]],
    vessels_by_id: Dict[int, Dict[str, Any]],
) -> List[Capacity]:
    """Flatten ``terminalsailingspace`` into one Capacity per sailing and destination."""
    readings: List[Capacity] = []
    for terminal in raw_terminals:
        departure_id = terminal.get("TerminalID")
        if departure_id is None:
            continue
        for departure in terminal.get("DepartingSpaces") or []:
            departure_time = parse_wsf_date(departure.get("Departure"))
            if departure_time is None:
                continue
            vessel = vessels_by_id.get(departure.get("VesselID")) or {}
            for space in departure.get("SpaceForArrivalTerminals") or []:
                arrival_id = space.get("TerminalID")
                if arrival_id is None:
                    continue
                readings.append(
                    Capacity(
                        departure_id=departure_id,
                        arrival_id=arrival_id,
                        departure_time=departure_time,
                        drive_up_capacity=space.get("DriveUpSpaceCount") or 0,
                        reservable_capacity=space.get("ReservableSpaceCount") or 0,
                        total_capacity=space.get("MaxSpaceCount") or 0,
                        has_drive_up=bool(space.get("DisplayDriveUpSpace")),
                        has_reservations=bool(space.get("DisplayReservableSpace")),
                        is_cancelled=bool(departure.get("IsCancelled")),
                        departure_delta=vessel.get("departureDelta"),
                    )
                )
    return readings


def supersedes(previous: Crossing, current: Capacity, now: float) -> bool:
    """Whether ``current`` is evidence that the earlier sailing left full.

    WSF stops reporting space for a sailing once it runs so late that the
    next sailing is due first. A later sailing that already has cars booked
    while the earlier one still shows space means the earlier one departed
    full.
    """
    if previous.capacity is None:
        return False
    return (
        not has_passed(previous.time, previous.departure_delta(), now)
        and not previous.capacity.is_full()
        and not current.is_empty()
    )


def apply_estimates(cache: FerryCache, now: float) -> int:
    """Copy last week's same-slot capacity onto every sailing; refresh ``hasPassed``."""
    estimated = 0
    for route, schedule in cache.schedule_by_route.items():
        shadow = cache.previous_capacity.get(route) or {}
        for departure_time, crossing in schedule.items():
            previous = shadow.get(week_before(departure_time))
            crossing.estimate = previous.estimate() if previous is not None else None
            crossing.has_passed = has_passed(departure_time, crossing.departure_delta(), now)
            if previous is not None:
                estimated += 1
    return estimated


class LiveRefresher:
    def __init__(
        self,
        cache: FerryCache,
        client: WSFClient,
        storage: CrossingStorage,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.client = client
        self.storage = storage
        self.clock = clock
        self.last_error: Optional[str] = None
        self.last_error_ts: Optional[float] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_cycle(self) -> bool:
        """One short cycle. Returns False when skipped because one is already running."""
        if self._running:
            print("[timing] previous short cycle still running, skipping tick")
            return False
        self._running = True
        try:
            await self._run_step("timing", "vessels", self.record_timing)
            await self._run_step("capacity", "schedule", self.record_capacity)
            await self._run_step("estimates", "schedule", self.update_estimates)
        finally:
            self._running = False
        return True

    async def _run_step(self, tag: str, family: str, step: Callable[[], Awaitable[Any]]) -> None:
        try:
            await self.cache.gates[family].run(step)
        except Exception as exc:
            self.last_error = f"{tag}: {exc}"
            self.last_error_ts = time.time()
            print(f"[{tag}] update failed: {exc}")

    async def record_timing(self) -> int:
        raw_vessels = await self.client.fetch_vessel_locations()
        now = self.clock()
        updates = [
            timing_update(raw, self.cache.vessels_by_id.get(raw["VesselID"]), now)
            for raw in raw_vessels
            if raw.get("VesselID") is not None
        ]
        for update in updates:
            vessel = self.cache.vessels_by_id.setdefault(update["id"], {})
            info = {**(vessel.get("info") or {}), **update.pop("info")}
            vessel.update(update)
            vessel["info"] = info
        return len(updates)

    async def record_capacity(self) -> Tuple[int, int, int]:
        raw_terminals = await self.client.fetch_terminal_sailing_space()
        now = self.clock()
        readings = capacity_readings(raw_terminals, self.cache.vessels_by_id)
        attached = dropped = corrected = 0
        for capacity in readings:
            crossing = self.cache.crossing(*capacity.key)
            if crossing is None:
                # schedule and space feeds disagree around the midnight rollover
                dropped += 1
                continue
            crossing.capacity = capacity
            self._save(capacity)
            attached += 1

            # Best effort: the previous sailing's own reading may come later in
            # this feed and overwrite the correction.
            previous = self.cache.previous_crossing(*capacity.key)
            if previous is None:
                continue
            if supersedes(previous, capacity, now):
                previous.capacity.drive_up_capacity = 0
                previous.capacity.reservable_capacity = 0
                self._save(previous.capacity)
                corrected += 1
        print(f"[capacity] attached={attached} dropped={dropped} superseded={corrected}")
        return attached, dropped, corrected

    async def update_estimates(self) -> int:
        estimated = apply_estimates(self.cache, self.clock())
        print(f"[estimates] {estimated} sailings have a previous-week estimate")
        return estimated

    def _save(self, capacity: Capacity) -> None:
        try:
            self.storage.upsert(capacity)
        except SQLAlchemyError as exc:
            print(f"[crossings] failed to persist {capacity.key}: {exc}")
