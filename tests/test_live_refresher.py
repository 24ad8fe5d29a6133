"""
Tests for the short cycle: vessel timing, capacity readings and estimates.
"""
import asyncio
import sys
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from crossing_storage import CrossingStorage  # noqa: E402
from ferry_cache import FerryCache  # noqa: E402
from ferry_models import Capacity, Crossing, week_before  # noqa: E402
from live_refresher import LiveRefresher, capacity_readings, supersedes, timing_update  # noqa: E402

NOW = 1_718_900_000
T1 = NOW + 1800
T2 = NOW + 5400


def wsf_date(seconds: int) -> str:
    return f"/Date({seconds * 1000}-0700)/"


def _location(at_dock, left_dock=None, scheduled=None, vessel_id=1):
    return {
        "VesselID": vessel_id,
        "AtDock": at_dock,
        "LeftDock": wsf_date(left_dock) if left_dock is not None else None,
        "ScheduledDeparture": wsf_date(scheduled) if scheduled is not None else None,
        "Latitude": 47.6,
        "Longitude": -122.5,
        "Speed": 15.2,
        "Heading": 270,
        "DepartingTerminalID": 3,
        "ArrivingTerminalID": 7,
        "EtaBasis": "Vessel Tokitae departed Bainbridge",
    }


def _space(departure_time, drive_up, reservable, total, departure_id=3, arrival_id=7):
    return {
        "TerminalID": departure_id,
        "DepartingSpaces": [
            {
                "Departure": wsf_date(departure_time),
                "VesselID": 1,
                "IsCancelled": False,
                "SpaceForArrivalTerminals": [
                    {
                        "TerminalID": arrival_id,
                        "DriveUpSpaceCount": drive_up,
                        "ReservableSpaceCount": reservable,
                        "MaxSpaceCount": total,
                        "DisplayDriveUpSpace": True,
                        "DisplayReservableSpace": True,
                    }
                ],
            }
        ],
    }


class FakeWSFClient:
    def __init__(self, locations=None, spaces=None):
        self.locations = locations or []
        self.spaces = spaces or []

    async def fetch_vessel_locations(self):
        return list(self.locations)

    async def fetch_terminal_sailing_space(self):
        return list(self.spaces)


class BrokenStorage:
    def __init__(self):
        self.attempts = 0

    def upsert(self, capacity):
        self.attempts += 1
        raise SQLAlchemyError("database is locked")


def _storage(tmp_path) -> CrossingStorage:
    storage = CrossingStorage(f"sqlite:///{tmp_path / 'crossings.db'}")
    storage.create_all()
    return storage


def _cache_with_route(*times):
    cache = FerryCache()
    cache.schedule_by_route[(3, 7)] = {t: Crossing(3, 7, t, True, True) for t in times}
    return cache


def _capacity(departure_time, drive_up, reservable, total=10):
    return Capacity(3, 7, departure_time, drive_up_capacity=drive_up, reservable_capacity=reservable, total_capacity=total)


def test_docked_time_is_stamped_on_arrival_only():
    first = timing_update(_location(False), None, now=100)
    assert first["dockedTime"] is None

    arrived = timing_update(_location(True), first, now=200)
    assert arrived["dockedTime"] == 200

    still_docked = timing_update(_location(True), arrived, now=300)
    assert still_docked["dockedTime"] == 200

    departed = timing_update(_location(False), still_docked, now=400)
    assert departed["dockedTime"] is None
    assert departed["isAtDock"] is False


def test_departure_delay_sticks_until_new_departure_data():
    departed = timing_update(_location(False, left_dock=NOW + 240, scheduled=NOW), None, now=NOW + 300)
    assert departed["departureDelta"] == 240
    assert departed["scheduledDepartureTime"] == NOW
    assert departed["info"] == {"crossing": "Vessel Tokitae departed Bainbridge"}

    docked = timing_update(_location(True), departed, now=NOW + 2400)
    assert docked["departureDelta"] == 240
    assert docked["departedTime"] is None


def test_record_timing_merges_into_existing_vessel():
    cache = FerryCache()
    cache.vessels_by_id[1] = {"id": 1, "name": "Tokitae", "serviceSpeed": 17, "info": {"ada": "Elevator"}}
    clock = iter([100, 200])
    refresher = LiveRefresher(cache, FakeWSFClient(locations=[_location(False)]), None, clock=lambda: next(clock))

    assert asyncio.run(refresher.record_timing()) == 1
    refresher.client.locations = [_location(True)]
    asyncio.run(refresher.record_timing())

    vessel = cache.vessels_by_id[1]
    assert vessel["name"] == "Tokitae"
    assert vessel["serviceSpeed"] == 17
    assert vessel["speed"] == 15.2
    assert vessel["dockedTime"] == 200
    assert vessel["info"] == {"ada": "Elevator", "crossing": "Vessel Tokitae departed Bainbridge"}


def test_capacity_readings_carry_vessel_delay():
    readings = capacity_readings([_space(T1, 4, 2, 10)], {1: {"departureDelta": 180}})
    assert len(readings) == 1
    reading = readings[0]
    assert reading.key == (3, 7, T1)
    assert reading.departure_delta == 180
    assert reading.has_reservations is True


def test_later_sailing_with_bookings_marks_earlier_sailing_full(tmp_path):
    storage = _storage(tmp_path)
    cache = _cache_with_route(T1, T2)
    cache.crossing(3, 7, T1).capacity = _capacity(T1, 3, 2)
    client = FakeWSFClient(spaces=[_space(T2, 0, 5, 10)])
    refresher = LiveRefresher(cache, client, storage, clock=lambda: NOW)

    assert asyncio.run(refresher.record_capacity()) == (1, 0, 1)

    earlier = cache.crossing(3, 7, T1).capacity
    assert (earlier.drive_up_capacity, earlier.reservable_capacity) == (0, 0)
    later = cache.crossing(3, 7, T2).capacity
    assert (later.drive_up_capacity, later.reservable_capacity, later.total_capacity) == (0, 5, 10)

    rows = {row.departure_time: row for row in storage.query_range(T1, T2)}
    assert (rows[T1].drive_up_capacity, rows[T1].reservable_capacity) == (0, 0)
    assert rows[T2].reservable_capacity == 5


def test_no_correction_when_earlier_sailing_passed_full_or_later_empty(tmp_path):
    storage = _storage(tmp_path)

    passed = _cache_with_route(NOW - 600, T2)
    passed.crossing(3, 7, NOW - 600).capacity = _capacity(NOW - 600, 3, 2)
    refresher = LiveRefresher(passed, FakeWSFClient(spaces=[_space(T2, 0, 5, 10)]), storage, clock=lambda: NOW)
    assert asyncio.run(refresher.record_capacity())[2] == 0
    assert passed.crossing(3, 7, NOW - 600).capacity.drive_up_capacity == 3

    empty = _cache_with_route(T1, T2)
    empty.crossing(3, 7, T1).capacity = _capacity(T1, 3, 2)
    refresher = LiveRefresher(empty, FakeWSFClient(spaces=[_space(T2, 6, 4, 10)]), storage, clock=lambda: NOW)
    assert asyncio.run(refresher.record_capacity())[2] == 0
    assert empty.crossing(3, 7, T1).capacity.drive_up_capacity == 3

    full = Crossing(3, 7, T1, True, True, capacity=_capacity(T1, 0, 0))
    assert not supersedes(full, _capacity(T2, 0, 5), NOW)
    open_ = Crossing(3, 7, T1, True, True, capacity=_capacity(T1, 1, 0))
    assert supersedes(open_, _capacity(T2, 0, 5), NOW)
    assert not supersedes(Crossing(3, 7, T1, True, True), _capacity(T2, 0, 5), NOW)


def test_supersession_uses_vessel_delay_when_reading_has_none(tmp_path):
    storage = _storage(tmp_path)
    earlier_time = NOW - 300
    vessel = {"id": 1, "departureDelta": 900}

    late = _cache_with_route(earlier_time, T2)
    late.vessels_by_id[1] = vessel
    earlier = late.crossing(3, 7, earlier_time)
    earlier.vessel = vessel
    earlier.capacity = _capacity(earlier_time, 3, 2)
    assert earlier.capacity.departure_delta is None
    refresher = LiveRefresher(late, FakeWSFClient(spaces=[_space(T2, 0, 5, 10)]), storage, clock=lambda: NOW)
    assert asyncio.run(refresher.record_capacity())[2] == 1
    assert earlier.capacity.drive_up_capacity == 0

    on_time = _cache_with_route(earlier_time, T2)
    on_time_earlier = on_time.crossing(3, 7, earlier_time)
    on_time_earlier.vessel = {"id": 1, "departureDelta": 0}
    on_time_earlier.capacity = _capacity(earlier_time, 3, 2)
    refresher = LiveRefresher(on_time, FakeWSFClient(spaces=[_space(T2, 0, 5, 10)]), storage, clock=lambda: NOW)
    assert asyncio.run(refresher.record_capacity())[2] == 0
    assert on_time_earlier.capacity.drive_up_capacity == 3


def test_reading_without_scheduled_sailing_is_dropped(tmp_path):
    storage = _storage(tmp_path)
    cache = _cache_with_route(T1)
    client = FakeWSFClient(spaces=[_space(T2, 4, 4, 10), _space(T1, 4, 4, 10, departure_id=9)])
    refresher = LiveRefresher(cache, client, storage, clock=lambda: NOW)

    assert asyncio.run(refresher.record_capacity()) == (0, 2, 0)
    assert storage.query_range() == []


def test_store_failure_does_not_block_capacity_update():
    storage = BrokenStorage()
    cache = _cache_with_route(T1, T2)
    cache.crossing(3, 7, T1).capacity = _capacity(T1, 3, 2)
    refresher = LiveRefresher(cache, FakeWSFClient(spaces=[_space(T2, 0, 5, 10)]), storage, clock=lambda: NOW)

    assert asyncio.run(refresher.record_capacity()) == (1, 0, 1)
    assert cache.crossing(3, 7, T2).capacity.reservable_capacity == 5
    assert storage.attempts == 2


def test_estimates_come_from_same_slot_last_week():
    cache = _cache_with_route(T1, T2)
    cache.previous_capacity[(3, 7)] = {week_before(T1): _capacity(week_before(T1), 7, 1)}
    refresher = LiveRefresher(cache, FakeWSFClient(), None, clock=lambda: NOW)

    assert asyncio.run(refresher.update_estimates()) == 1
    assert cache.crossing(3, 7, T1).estimate == {"driveUpCapacity": 7, "reservableCapacity": 1}
    assert cache.crossing(3, 7, T2).estimate is None


def test_full_short_cycle(tmp_path):
    storage = _storage(tmp_path)
    cache = _cache_with_route(NOW - 60, T1)
    cache.previous_capacity[(3, 7)] = {week_before(T1): _capacity(week_before(T1), 2, 2)}
    client = FakeWSFClient(
        locations=[_location(False, left_dock=NOW - 60 + 120, scheduled=NOW - 60)],
        spaces=[_space(T1, 8, 1, 10)],
    )
    refresher = LiveRefresher(cache, client, storage, clock=lambda: NOW)

    assert asyncio.run(refresher.run_cycle()) is True
    assert refresher.last_error is None
    assert cache.vessels_by_id[1]["departureDelta"] == 120
    assert cache.crossing(3, 7, T1).capacity.drive_up_capacity == 8
    assert cache.crossing(3, 7, T1).capacity.departure_delta == 120
    assert cache.crossing(3, 7, T1).estimate == {"driveUpCapacity": 2, "reservableCapacity": 2}
    assert cache.crossing(3, 7, NOW - 60).has_passed is True
    assert [row.departure_time for row in storage.query_range()] == [T1]
    assert not any(cache.stats()["refreshing"].values())
