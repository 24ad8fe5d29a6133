"""
Tests for the per-family refresh gates and the cache readers.

Validates:
1. Readers wait for the refresh in flight and then see its result
2. A failed refresh clears the in-flight task and does not leak its error
3. Refreshes of the same family never overlap
"""
import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ferry_cache import FerryCache  # noqa: E402
from ferry_models import Crossing  # noqa: E402


def _crossing(departure_time):
    return Crossing(3, 7, departure_time, True, True)


def test_reader_waits_for_inflight_refresh():
    async def scenario():
        cache = FerryCache()
        started = asyncio.Event()
        release = asyncio.Event()

        async def refresh():
            started.set()
            await release.wait()
            cache.vessels_by_id[1] = {"id": 1, "name": "Tacoma"}
            return True

        run = asyncio.create_task(cache.gates["vessels"].run(refresh))
        await started.wait()
        assert cache.gates["vessels"].is_refreshing

        reader = asyncio.create_task(cache.get_vessel(1))
        await asyncio.sleep(0.01)
        assert not reader.done()

        release.set()
        assert await reader == {"id": 1, "name": "Tacoma"}
        assert await run is True
        assert not cache.gates["vessels"].is_refreshing

    asyncio.run(scenario())


def test_failed_refresh_clears_inflight_and_readers_get_old_data():
    async def scenario():
        cache = FerryCache()
        cache.terminals_by_id[5] = {"id": 5, "name": "Clinton"}

        async def refresh():
            await asyncio.sleep(0.01)
            raise RuntimeError("upstream down")

        run = asyncio.create_task(cache.gates["terminals"].run(refresh))
        await asyncio.sleep(0)
        reader = asyncio.create_task(cache.get_terminal(5))

        with pytest.raises(RuntimeError):
            await run
        assert await reader == {"id": 5, "name": "Clinton"}
        assert not cache.gates["terminals"].is_refreshing

    asyncio.run(scenario())


def test_refreshes_of_one_family_are_serialized():
    async def scenario():
        cache = FerryCache()
        active = 0
        peak = 0

        async def refresh():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return True

        await asyncio.gather(*(cache.gates["schedule"].run(refresh) for _ in range(5)))
        return peak

    assert asyncio.run(scenario()) == 1


def test_get_vessel_reset_delay_returns_detached_copy():
    cache = FerryCache()
    cache.vessels_by_id[1] = {"id": 1, "departureDelta": 420, "location": {"latitude": 47.6}}

    copy_ = asyncio.run(cache.get_vessel(1, reset_delay=True))
    assert copy_["departureDelta"] is None
    copy_["location"]["latitude"] = 0.0

    live = asyncio.run(cache.get_vessel(1))
    assert live["departureDelta"] == 420
    assert live["location"]["latitude"] == 47.6
    assert asyncio.run(cache.get_vessel(99, reset_delay=True)) is None


def test_readers_return_empty_before_first_refresh():
    cache = FerryCache()
    assert asyncio.run(cache.get_vessels()) == {}
    assert asyncio.run(cache.get_terminals()) == {}
    assert asyncio.run(cache.get_mates()) == {}
    assert asyncio.run(cache.get_schedule(3, 7)) == []


def test_schedule_is_ordered_and_previous_crossing_is_found():
    cache = FerryCache()
    cache.schedule_by_route[(3, 7)] = {t: _crossing(t) for t in (3000, 1000, 2000)}

    assert [c.time for c in asyncio.run(cache.get_schedule(3, 7))] == [1000, 2000, 3000]
    assert cache.previous_crossing(3, 7, 3000).time == 2000
    assert cache.previous_crossing(3, 7, 1000) is None
    assert cache.previous_crossing(3, 7, 1500) is None
    assert cache.crossing(3, 7, 2000).time == 2000
    assert cache.crossing(7, 3, 2000) is None


def test_stats_report_sizes():
    cache = FerryCache()
    cache.schedule_by_route[(3, 7)] = {1000: _crossing(1000)}
    cache.vessels_by_id[1] = {"id": 1}
    stats = cache.stats()
    assert stats["routes"] == 1
    assert stats["crossings"] == 1
    assert stats["vessels"] == 1
    assert stats["refreshing"] == {"schedule": False, "vessels": False, "terminals": False}
