"""
Ferry domain types shared by the cache, the refreshers and the store.

Times are epoch seconds throughout. Calendar arithmetic (one week back,
"today") happens in the WSF service time zone, America/Los_Angeles, so a
sailing slot one week earlier keeps the same wall-clock time across DST.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

PACIFIC_TZ = ZoneInfo("America/Los_Angeles")

# WSF loading rule codes
LOADING_RULE_PASSENGERS = {1, 3}
LOADING_RULE_VEHICLES = {2, 3}


def week_before(timestamp: int) -> int:
    local = datetime.fromtimestamp(timestamp, PACIFIC_TZ)
    return int((local - timedelta(weeks=1)).timestamp())


def trip_date(now: Optional[float] = None) -> date:
    """Calendar date WSF uses for "today" schedule and route lookups."""
    if now is None:
        now = time.time()
    return datetime.fromtimestamp(now, PACIFIC_TZ).date()


def has_passed(
    departure_time: int,
    departure_delta: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """True once the delay-adjusted departure time is behind the wall clock."""
    if now is None:
        now = time.time()
    return departure_time + (departure_delta or 0) < now


def allows_passengers(loading_rule: Any) -> bool:
    return loading_rule in LOADING_RULE_PASSENGERS


def allows_vehicles(loading_rule: Any) -> bool:
    return loading_rule in LOADING_RULE_VEHICLES


@dataclass
class Capacity:
    """Vehicle space reading for one sailing."""
    departure_id: int
    arrival_id: int
    departure_time: int
    drive_up_capacity: int = 0
    reservable_capacity: int = 0
    total_capacity: int = 0
    has_drive_up: bool = True
    has_reservations: bool = False
    is_cancelled: bool = False
    departure_delta: Optional[int] = None  # vessel delay seen when recorded

    @property
    def key(self) -> tuple:
        return (self.departure_id, self.arrival_id, self.departure_time)

    def is_empty(self) -> bool:
        return self.drive_up_capacity + self.reservable_capacity == self.total_capacity

    def is_full(self) -> bool:
        return self.drive_up_capacity == 0 and self.reservable_capacity == 0

    def has_passed(self, now: Optional[float] = None) -> bool:
        return has_passed(self.departure_time, self.departure_delta, now)

    def estimate(self) -> Dict[str, int]:
        return {
            "driveUpCapacity": self.drive_up_capacity,
            "reservableCapacity": self.reservable_capacity,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "departureId": self.departure_id,
            "arrivalId": self.arrival_id,
            "departureTime": self.departure_time,
            "departureDelta": self.departure_delta,
            "driveUpCapacity": self.drive_up_capacity,
            "reservableCapacity": self.reservable_capacity,
            "totalCapacity": self.total_capacity,
            "hasDriveUp": self.has_drive_up,
            "hasReservations": self.has_reservations,
            "isCancelled": self.is_cancelled,
        }


def is_empty(capacity: Capacity) -> bool:
    return capacity.is_empty()


def is_full(capacity: Capacity) -> bool:
    return capacity.is_full()


@dataclass
class Crossing:
    """One scheduled sailing on a route."""
    departure_id: int
    arrival_id: int
    time: int
    allows_passengers: bool
    allows_vehicles: bool
    has_passed: bool = False
    vessel: Optional[Dict[str, Any]] = None
    capacity: Optional[Capacity] = None
    estimate: Optional[Dict[str, int]] = None

    @property
    def key(self) -> tuple:
        return (self.departure_id, self.arrival_id, self.time)

    def departure_delta(self) -> Optional[int]:
        """Delay that applies to this sailing: recorded capacity first, then vessel."""
        if self.capacity is not None and self.capacity.departure_delta is not None:
            return self.capacity.departure_delta
        if self.vessel:
            return self.vessel.get("departureDelta")
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "departureId": self.departure_id,
            "arrivalId": self.arrival_id,
            "time": self.time,
            "allowsPassengers": self.allows_passengers,
            "allowsVehicles": self.allows_vehicles,
            "hasPassed": self.has_passed,
            "vessel": copy.deepcopy(self.vessel),
            "capacity": self.capacity.to_dict() if self.capacity is not None else None,
            "estimate": dict(self.estimate) if self.estimate is not None else None,
        }
