"""
In-memory ferry state and the read accessors served over HTTP.

``FerryCache`` is built once at startup and handed to both refreshers and
the web app. Each upstream family (vessels, schedule, terminals) has a
``RefreshGate``: writers run their refresh through the gate, readers await
whatever refresh is in flight for the family they read before looking at
the maps. Readers never see a half-built family because refreshers build
new maps in locals and swap them in at the end.
"""

from __future__ import annotations

import asyncio
import copy
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ferry_models import Capacity, Crossing
from wsf_client import FAMILIES

T = TypeVar("T")

RouteKey = Tuple[int, int]


class RefreshGate:
    """Refresh state for one family: idle, or refreshing with a published task.

    ``run`` serializes refreshes of the family. The task is published before
    it starts and cleared when it finishes, whether it succeeded or raised,
    so later readers never wait on a stale task.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            task = asyncio.ensure_future(factory())
            self._inflight = task
            try:
                return await task
            finally:
                if self._inflight is task:
                    self._inflight = None

    async def settled(self) -> None:
        """Wait for the in-flight refresh, if any. Its error is not re-raised."""
        task = self._inflight
        if task is None or task is asyncio.current_task():
            return
        await asyncio.wait({task})


class FerryCache:
    def __init__(self) -> None:
        self.mates_by_terminal: Dict[int, List[int]] = {}
        self.vessels_by_id: Dict[int, Dict[str, Any]] = {}
        self.terminals_by_id: Dict[int, Dict[str, Any]] = {}
        self.schedule_by_route: Dict[RouteKey, Dict[int, Crossing]] = {}
        # Capacity rows from one week back, keyed like the schedule.
        self.previous_capacity: Dict[RouteKey, Dict[int, Capacity]] = {}
        self.flush_dates: Dict[str, Optional[int]] = {family: None for family in FAMILIES}
        self.updated_at: Dict[str, Optional[float]] = {family: None for family in FAMILIES}
        self.gates: Dict[str, RefreshGate] = {family: RefreshGate(family) for family in FAMILIES}

    # ---------------------------
    # Writer helpers (refreshers only)
    # ---------------------------
    def mark_updated(self, family: str, flush_date: Optional[int]) -> None:
        self.flush_dates[family] = flush_date
        self.updated_at[family] = time.time()

    def crossing(self, departure_id: int, arrival_id: int, departure_time: int) -> Optional[Crossing]:
        return self.schedule_by_route.get((departure_id, arrival_id), {}).get(departure_time)

    def previous_crossing(
        self, departure_id: int, arrival_id: int, departure_time: int
    ) -> Optional[Crossing]:
        """The sailing scheduled immediately before ``departure_time`` on the route."""
        schedule = self.schedule_by_route.get((departure_id, arrival_id))
        if not schedule or departure_time not in schedule:
            return None
        earlier = [t for t in schedule if t < departure_time]
        if not earlier:
            return None
        return schedule[max(earlier)]

    def iter_crossings(self):
        for schedule in self.schedule_by_route.values():
            yield from schedule.values()

    # ---------------------------
    # Readers
    # ---------------------------
    async def get_vessels(self) -> Dict[int, Dict[str, Any]]:
        await self.gates["vessels"].settled()
        return self.vessels_by_id

    async def get_vessel(self, vessel_id: int, reset_delay: bool = False) -> Optional[Dict[str, Any]]:
        """Vessel by id. ``reset_delay`` returns a copy without ``departureDelta``."""
        await self.gates["vessels"].settled()
        vessel = self.vessels_by_id.get(vessel_id)
        if vessel is None or not reset_delay:
            return vessel
        detached = copy.deepcopy(vessel)
        detached["departureDelta"] = None
        return detached

    async def get_terminals(self) -> Dict[int, Dict[str, Any]]:
        await self.gates["terminals"].settled()
        return self.terminals_by_id

    async def get_terminal(self, terminal_id: int) -> Optional[Dict[str, Any]]:
        await self.gates["terminals"].settled()
        return self.terminals_by_id.get(terminal_id)

    async def get_mates(self) -> Dict[int, List[int]]:
        await self.gates["schedule"].settled()
        return self.mates_by_terminal

    async def get_schedule(self, departing_id: int, arriving_id: int) -> List[Crossing]:
        await self.gates["schedule"].settled()
        schedule = self.schedule_by_route.get((departing_id, arriving_id), {})
        return [schedule[t] for t in sorted(schedule)]

    def snapshot(self) -> Dict[str, Any]:
        """Deterministic JSON-ready dump of every map."""
        return {
            "mates": {str(k): list(v) for k, v in sorted(self.mates_by_terminal.items())},
            "vessels": {str(k): copy.deepcopy(v) for k, v in sorted(self.vessels_by_id.items())},
            "terminals": {str(k): copy.deepcopy(v) for k, v in sorted(self.terminals_by_id.items())},
            "schedule": {
                f"{dep}-{arr}": [schedule[t].to_dict() for t in sorted(schedule)]
                for (dep, arr), schedule in sorted(self.schedule_by_route.items())
            },
            "previous_capacity": {
                f"{dep}-{arr}": [rows[t].to_dict() for t in sorted(rows)]
                for (dep, arr), rows in sorted(self.previous_capacity.items())
            },
            "flush_dates": dict(self.flush_dates),
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "vessels": len(self.vessels_by_id),
            "terminals": len(self.terminals_by_id),
            "routes": len(self.schedule_by_route),
            "crossings": sum(len(s) for s in self.schedule_by_route.values()),
            "flush_dates": dict(self.flush_dates),
            "updated_at": dict(self.updated_at),
            "refreshing": {name: gate.is_refreshing for name, gate in self.gates.items()},
        }
