"""
Long-cycle refresh: vessel static data, today's schedule and terminals.

Runs every ``LONG_REFRESH_S`` seconds, always in the same order because
each stage feeds the next:

1. vessels   - static vessel attributes merged into the vessel dicts
2. schedule  - mates, today's sailings per mate pair, last week's capacity
               shadow, and backfill of persisted capacity into the schedule
3. terminals - terminal details, overrides, cameras and mate routes

Each family is gated by its upstream cache flush date: when the date is the
same as the one recorded after the last successful refresh the family is
skipped. New maps are built in locals and only swapped into the cache once
the whole family succeeded, so a failed fetch leaves yesterday's data in
place and the next tick retries.
"""

from __future__ import annotations

import asyncio
import copy
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from crossing_storage import CrossingStorage
from ferry_cache import FerryCache, RouteKey
from ferry_models import (
    Capacity,
    Crossing,
    allows_passengers,
    allows_vehicles,
    has_passed,
    trip_date,
    week_before,
)
from terminal_overrides import apply_overrides
from wsf_client import WSFClient, parse_wsf_date

BACKFILL_WINDOW_S = 24 * 3600


def _join_text(*parts: Optional[str]) -> Optional[str]:
    text = "".join(p for p in parts if p)
    return text or None


def _to_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def normalize_vessel_static(raw: Dict[str, Any]) -> Dict[str, Any]:
    vessel_id = raw["VesselID"]
    status = raw.get("Status", raw.get("status"))
    vessel_class = raw.get("Class") or {}
    return {
        "abbreviation": raw.get("VesselAbbrev"),
        "beam": raw.get("Beam"),
        "classId": vessel_class.get("ClassID"),
        "hasCarDeckRestroom": raw.get("CarDeckRestroom"),
        "hasElevator": raw.get("Elevator"),
        "hasGalley": raw.get("MainCabinGalley"),
        "hasRestroom": bool(raw.get("CarDeckRestroom") or raw.get("MainCabinRestroom")),
        "hasWiFi": raw.get("PublicWifi"),
        "horsepower": raw.get("Horsepower"),
        "id": vessel_id,
        "inMaintenance": status == 2,
        "inService": status == 1,
        "info": {"ada": raw.get("ADAInfo")},
        "isAdaAccessible": raw.get("ADAAccessible"),
        "length": raw.get("Length"),
        "maxClearance": raw.get("TallDeckClearance"),
        "name": raw.get("VesselName"),
        "passengerCapacity": raw.get("MaxPassengerCount"),
        "serviceSpeed": raw.get("SpeedInKnots"),
        "tallVehicleCapacity": raw.get("TallDeckSpace"),
        "vehicleCapacity": (raw.get("RegDeckSpace") or 0) + (raw.get("TallDeckSpace") or 0),
        "weight": raw.get("Tonnage"),
        "yearBuilt": raw.get("YearBuilt"),
        "yearRebuilt": raw.get("YearRebuilt"),
    }


def normalize_terminal(raw: Dict[str, Any]) -> Dict[str, Any]:
    terminal_id = raw["TerminalID"]
    bulletins = [
        {
            "title": b.get("BulletinTitle"),
            "description": b.get("BulletinText"),
            "date": parse_wsf_date(b.get("BulletinLastUpdated")),
        }
        for b in raw.get("Bulletins") or []
    ]
    bulletins.sort(key=lambda b: b["date"] or 0, reverse=True)
    return {
        "abbreviation": raw.get("TerminalAbbrev"),
        "bulletins": bulletins,
        "cameras": [],
        "hasElevator": raw.get("Elevator"),
        "hasOverheadLoading": raw.get("OverheadPassengerLoading"),
        "hasRestroom": raw.get("Restroom"),
        "hasWaitingRoom": raw.get("WaitingRoom"),
        "hasFood": raw.get("FoodService"),
        "id": terminal_id,
        "info": {
            "ada": raw.get("AdaInfo"),
            "airport": _join_text(raw.get("AirportInfo"), raw.get("AirportShuttleInfo")),
            "bicycle": raw.get("BikeInfo"),
            "construction": raw.get("ConstructionInfo"),
            "food": raw.get("FoodServiceInfo"),
            "lost": raw.get("LostAndFoundInfo"),
            "motorcycle": raw.get("MotorcycleInfo"),
            "parking": _join_text(raw.get("ParkingInfo"), raw.get("ParkingShuttleInfo")),
            "security": raw.get("SecurityInfo"),
            "train": raw.get("TrainInfo"),
            "truck": raw.get("TruckInfo"),
        },
        "location": {
            "link": raw.get("MapLink"),
            "latitude": raw.get("Latitude"),
            "longitude": raw.get("Longitude"),
            "address": {
                "line1": raw.get("AddressLineOne"),
                "line2": raw.get("AddressLineTwo"),
                "city": raw.get("City"),
                "state": raw.get("State"),
                "zip": raw.get("ZipCode"),
            },
        },
        "mates": [],
        "name": raw.get("TerminalName"),
        "waitTimes": [
            {
                "title": w.get("RouteName"),
                "description": w.get("WaitTimeNotes"),
                "time": parse_wsf_date(w.get("WaitTimeLastUpdated")),
            }
            for w in raw.get("WaitTimes") or []
        ],
    }


def normalize_route(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    return {
        "id": raw.get("RouteID"),
        "abbreviation": raw.get("RouteAbbrev"),
        "description": raw.get("Description"),
        "crossingTime": _to_number(raw.get("CrossingTime")),
    }


class ScheduleRefresher:
    def __init__(
        self,
        cache: FerryCache,
        client: WSFClient,
        storage: CrossingStorage,
        cameras: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.client = client
        self.storage = storage
        self.cameras = cameras or {}
        self.clock = clock
        self.last_error: Optional[str] = None
        self.last_error_ts: Optional[float] = None
        self._running = False
        self._terminal_mates: Optional[Dict[int, List[int]]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_cycle(self) -> bool:
        """One long cycle. Returns False when skipped because one is already running."""
        if self._running:
            print("[schedule] previous long cycle still running, skipping tick")
            return False
        self._running = True
        try:
            await self._run_family("vessels", self.update_vessels)
            await self._run_family("schedule", self.update_schedule)
            await self._run_family("terminals", self.update_terminals)
        finally:
            self._running = False
        return True

    async def _run_family(self, family: str, refresh: Callable[[], Awaitable[bool]]) -> None:
        start = time.perf_counter()
        try:
            updated = await self.cache.gates[family].run(refresh)
        except Exception as exc:
            self.last_error = f"{family}: {exc}"
            self.last_error_ts = time.time()
            print(f"[{family}] refresh failed after {time.perf_counter() - start:.2f}s: {exc}")
            return
        if updated:
            print(f"[{family}] refresh completed in {time.perf_counter() - start:.2f}s")

    async def _flush_unchanged(self, family: str) -> Tuple[bool, Optional[int]]:
        flush_date = await self.client.check_flush(family)
        unchanged = flush_date is not None and flush_date == self.cache.flush_dates.get(family)
        return unchanged, flush_date

    # ---------------------------
    # Vessels
    # ---------------------------
    async def update_vessels(self) -> bool:
        unchanged, flush_date = await self._flush_unchanged("vessels")
        if unchanged:
            print("[vessels] skipped, cache flush date unchanged")
            return False
        raw_vessels = await self.client.fetch_vessels_verbose()
        statics = [normalize_vessel_static(v) for v in raw_vessels if v.get("VesselID") is not None]

        for static in statics:
            vessel = self.cache.vessels_by_id.setdefault(static["id"], {})
            info = {**(vessel.get("info") or {}), **static.pop("info")}
            vessel.update(static)
            vessel["info"] = info
        self.cache.mark_updated("vessels", flush_date)
        print(f"[vessels] merged static data for {len(statics)} vessels")
        return True

    # ---------------------------
    # Schedule
    # ---------------------------
    async def update_schedule(self) -> bool:
        unchanged, flush_date = await self._flush_unchanged("schedule")
        if unchanged:
            print("[schedule] skipped, cache flush date unchanged")
            return False
        now = self.clock()
        pairs = await self.client.fetch_terminals_and_mates(trip_date(now))
        mates: Dict[int, List[int]] = {}
        for pair in pairs:
            departing_id = pair.get("DepartingTerminalID")
            arriving_id = pair.get("ArrivingTerminalID")
            if departing_id is None or arriving_id is None:
                continue
            mate_ids = mates.setdefault(departing_id, [])
            if arriving_id not in mate_ids:
                mate_ids.append(arriving_id)

        routes: List[RouteKey] = [(dep, arr) for dep, arr_ids in mates.items() for arr in arr_ids]
        built = await asyncio.gather(*(self._build_route(dep, arr, now) for dep, arr in routes))
        schedule_by_route: Dict[RouteKey, Dict[int, Crossing]] = dict(zip(routes, built))

        previous_capacity = dict(self.cache.previous_capacity)
        for route, schedule in schedule_by_route.items():
            self._load_previous_week(route, schedule, previous_capacity)
        self._backfill(schedule_by_route, now)

        self.cache.mates_by_terminal = mates
        self.cache.schedule_by_route = schedule_by_route
        self.cache.previous_capacity = previous_capacity
        self.cache.mark_updated("schedule", flush_date)
        print(
            f"[schedule] {len(routes)} routes, "
            f"{sum(len(s) for s in schedule_by_route.values())} sailings"
        )
        return True

    async def _build_route(self, departing_id: int, arriving_id: int, now: float) -> Dict[int, Crossing]:
        sailings = await self.client.fetch_schedule_today(departing_id, arriving_id)
        timed = []
        for departure in sailings:
            departure_time = parse_wsf_date(departure.get("DepartingTime"))
            if departure_time is not None:
                timed.append((departure_time, departure))
        timed.sort(key=lambda item: item[0])

        seen_vessels = set()
        crossings: Dict[int, Crossing] = {}
        for departure_time, departure in timed:
            vessel_id = departure.get("VesselID")
            vessel = self.cache.vessels_by_id.get(vessel_id)
            if vessel_id not in seen_vessels:
                # A vessel's first sailing of the day starts without yesterday's delay
                seen_vessels.add(vessel_id)
                if vessel is not None:
                    vessel = copy.deepcopy(vessel)
                    vessel["departureDelta"] = None
            # later sailings share the live vessel dict
            loading_rule = departure.get("LoadingRule")
            delta = vessel.get("departureDelta") if vessel else None
            crossings[departure_time] = Crossing(
                departure_id=departing_id,
                arrival_id=arriving_id,
                time=departure_time,
                allows_passengers=allows_passengers(loading_rule),
                allows_vehicles=allows_vehicles(loading_rule),
                has_passed=has_passed(departure_time, delta, now),
                vessel=vessel,
            )
        return crossings

    def _load_previous_week(
        self,
        route: RouteKey,
        schedule: Dict[int, Crossing],
        previous_capacity: Dict[RouteKey, Dict[int, Capacity]],
    ) -> None:
        if not schedule:
            return
        start = week_before(min(schedule))
        end = week_before(max(schedule))
        existing = previous_capacity.get(route) or {}
        if any(start <= t <= end for t in existing):
            return
        try:
            rows = self.storage.query_range(start, end, departure_id=route[0], arrival_id=route[1])
        except SQLAlchemyError as exc:
            print(f"[crossings] previous week query failed for {route}: {exc}")
            return
        previous_capacity[route] = {row.departure_time: row for row in rows}

    def _backfill(self, schedule_by_route: Dict[RouteKey, Dict[int, Crossing]], now: float) -> None:
        try:
            rows = self.storage.query_range(start=int(now) - BACKFILL_WINDOW_S, include_start=False)
        except SQLAlchemyError as exc:
            print(f"[crossings] backfill query failed: {exc}")
            return
        attached = 0
        for row in rows:
            crossing = schedule_by_route.get((row.departure_id, row.arrival_id), {}).get(row.departure_time)
            if crossing is None:
                continue
            crossing.capacity = row
            crossing.has_passed = has_passed(crossing.time, crossing.departure_delta(), now)
            attached += 1
        print(f"[crossings] backfilled {attached} of {len(rows)} capacity rows")

    # ---------------------------
    # Terminals
    # ---------------------------
    async def update_terminals(self) -> bool:
        unchanged, flush_date = await self._flush_unchanged("terminals")
        mates = await self.cache.get_mates()
        if unchanged and mates == self._terminal_mates:
            print("[terminals] skipped, cache flush date unchanged")
            return False
        raw_terminals = await self.client.fetch_terminals_verbose()
        terminals: Dict[int, Dict[str, Any]] = {}
        for raw in raw_terminals:
            if raw.get("TerminalID") is None:
                continue
            terminal = normalize_terminal(raw)
            terminal["cameras"] = copy.deepcopy(self.cameras.get(terminal["id"], []))
            terminals[terminal["id"]] = apply_overrides(terminal)

        today = trip_date(self.clock())
        terminal_ids = [tid for tid in mates if tid in terminals]
        routed = await asyncio.gather(
            *(self._mates_with_routes(tid, mates[tid], terminals, today) for tid in terminal_ids)
        )
        for terminal_id, mates_with_routes in zip(terminal_ids, routed):
            terminals[terminal_id]["mates"] = mates_with_routes

        self.cache.terminals_by_id = terminals
        self._terminal_mates = copy.deepcopy(mates)
        self.cache.mark_updated("terminals", flush_date)
        print(f"[terminals] refreshed {len(terminals)} terminals")
        return True

    async def _mates_with_routes(
        self,
        terminal_id: int,
        mate_ids: List[int],
        terminals: Dict[int, Dict[str, Any]],
        today,
    ) -> List[Dict[str, Any]]:
        result: List[Dict[str, Any]] = []
        for mate_id in mate_ids:
            route = await self.client.fetch_route_details(today, terminal_id, mate_id)
            mate = copy.deepcopy(terminals.get(mate_id) or {"id": mate_id})
            mate.pop("mates", None)
            mate["route"] = normalize_route(route)
            result.append(mate)
        return result
