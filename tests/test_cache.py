"""Tests for the status cache."""
import asyncio

import pytest

from conftest import BrokenCacheBackend, PNR
from pnr_tracker.cache.store import MemoryCacheBackend, StatusCache, batch_key
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.models import BatchReport, StatusSnapshot


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_entry_served_until_ttl_then_absent():
    """Test an entry is readable before its TTL and gone at expiry."""
    clock = FakeClock()
    cache = StatusCache(MemoryCacheBackend(clock=clock))
    snapshot = StatusSnapshot(pnr=PNR, status="CNF/S1/25")

    async def scenario():
        await cache.put(PNR, snapshot, ttl=10)
        clock.now = 9.9
        served = await cache.get(PNR)
        clock.now = 10.0
        expired = await cache.get(PNR)
        return served, expired

    served, expired = asyncio.run(scenario())
    assert served == snapshot
    assert expired is None


def test_invalidate_removes_entry():
    """Test explicit invalidation."""
    cache = StatusCache()

    async def scenario():
        await cache.put(PNR, StatusSnapshot(pnr=PNR, status="WL/3"))
        await cache.invalidate(PNR)
        return await cache.get(PNR)

    assert asyncio.run(scenario()) is None


def test_negative_ttl_rejected():
    """Test a TTL below zero is refused."""
    cache = StatusCache()
    with pytest.raises(ValueError):
        asyncio.run(cache.put(PNR, StatusSnapshot(pnr=PNR, status="WL/3"), ttl=-1))


def test_batch_key_ignores_order_and_duplicates():
    """Test batch keys are stable for the same PNR set."""
    assert batch_key(["2345678901", "1234567890"]) == batch_key(["1234567890", "2345678901", "1234567890"])
    assert batch_key(["1234567890"]) != batch_key(["2345678901"])


def test_batch_result_uses_batch_ttl():
    """Test batch reports expire on their own, shorter TTL."""
    clock = FakeClock()
    cache = StatusCache(MemoryCacheBackend(clock=clock), status_ttl=300, batch_ttl=30)
    key = batch_key([PNR])

    async def scenario():
        await cache.put_batch_result(key, BatchReport(batch_key=key))
        clock.now = 29
        hit = await cache.get_batch_result(key)
        clock.now = 31
        miss = await cache.get_batch_result(key)
        return hit, miss

    hit, miss = asyncio.run(scenario())
    assert hit is not None and hit.batch_key == key
    assert miss is None


def test_backend_failure_degrades_to_miss():
    """Test an unreachable backend reads as a miss and writes are dropped."""
    events = EventRecorder()
    cache = StatusCache(BrokenCacheBackend(), events=events)

    async def scenario():
        await cache.put(PNR, StatusSnapshot(pnr=PNR, status="WL/3"))
        await cache.invalidate(PNR)
        return await cache.get(PNR)

    assert asyncio.run(scenario()) is None
    assert events.count("cache_error") == 3


def test_unreadable_entry_is_discarded():
    """Test a corrupt cached value is treated as a miss."""
    backend = MemoryCacheBackend()
    cache = StatusCache(backend)

    async def scenario():
        await backend.set("pnr:status:" + PNR, b"not json", 60)
        value = await cache.get(PNR)
        return value, len(backend)

    value, remaining = asyncio.run(scenario())
    assert value is None
    assert remaining == 0


class CodecErrorBackend:
    """Backend whose writes fail with a ValueError, as a serializing client might."""

    def __init__(self):
        self.entries = {}

    async def get(self, key):
        return self.entries.get(key)

    async def set(self, key, value, ttl):
        raise ValueError("cannot encode value")

    async def delete(self, key):
        self.entries.pop(key, None)


def test_backend_value_error_degrades_to_miss():
    """Test any backend write error is absorbed; only a bad TTL argument raises."""
    events = EventRecorder()
    cache = StatusCache(CodecErrorBackend(), events=events)

    async def scenario():
        await cache.put(PNR, StatusSnapshot(pnr=PNR, status="WL/3"))
        return await cache.get(PNR)

    assert asyncio.run(scenario()) is None
    assert events.count("cache_error") == 1
    with pytest.raises(ValueError):
        asyncio.run(cache.put_batch_result(batch_key([PNR]), BatchReport(batch_key="k"), ttl=-1))
