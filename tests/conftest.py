"""Shared fakes and builders for the tracker tests."""
import asyncio
import time
from typing import Optional

import pytest

from pnr_tracker.dispatch.channels import NotificationChannel
from pnr_tracker.errors import ChannelDeliveryFailure
from pnr_tracker.fetch.rate_limit import UpstreamLimiter
from pnr_tracker.fetch.single_flight import RetryPolicy
from pnr_tracker.models import ChannelOutcome, StatusSnapshot, TrackedRecord
from pnr_tracker.service import TrackingService

PNR = "1234567890"
OTHER_PNR = "2345678901"

# No waiting between retries
FAST_RETRY = RetryPolicy(max_attempts=3, multiplier=0, min_wait=0, max_wait=0)


class FakeUpstream:
    """Scripted status source.

    Each PNR gets a list of responses (status strings, snapshots or
    exceptions) served in order; the last one repeats.
    """

    def __init__(self, default: str = "WL/12", delay: float = 0.0):
        self.default = default
        self.delay = delay
        self.responses: dict = {}
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.peak = 0

    def script(self, pnr: str, *responses) -> None:
        self.responses[pnr] = list(responses)

    async def fetch_status(self, pnr: str) -> StatusSnapshot:
        self.calls.append(pnr)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        queue = self.responses.get(pnr) or [self.default]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, StatusSnapshot):
            return item
        return StatusSnapshot(pnr=pnr, status=item)


class FakeChannel(NotificationChannel):
    """Records what it was asked to send; optionally fails or holds sends on a gate."""

    def __init__(self, name: str, fail: bool = False, enabled: bool = True):
        self.name = name
        self.fail = fail
        self.enabled = enabled
        self.sent = []
        self.gate: Optional[asyncio.Event] = None

    def is_enabled(self, settings) -> bool:
        return self.enabled

    async def send(self, record, transition, settings) -> ChannelOutcome:
        self.sent.append(transition)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ChannelDeliveryFailure(self.name, "boom")
        return ChannelOutcome.DELIVERED


class BrokenCacheBackend:
    """Cache backend that is always unreachable."""

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


def build_service(tmp_path, upstream=None, channels=None, cache_backend=None, clock=time.time) -> TrackingService:
    return TrackingService.create(
        db_path=tmp_path / "state.db",
        source=upstream if upstream is not None else FakeUpstream(),
        channels=channels if channels is not None else [FakeChannel("email"), FakeChannel("push")],
        cache_backend=cache_backend,
        limiter=UpstreamLimiter(4, 0),
        retry_policy=FAST_RETRY,
        events_path=tmp_path / "events.jsonl",
        clock=clock,
    )


def make_record(pnr: str = PNR, **fields) -> TrackedRecord:
    fields.setdefault("owner_id", "user-1")
    return TrackedRecord(pnr=pnr, **fields)


async def wait_for(predicate, timeout: float = 3.0) -> None:
    """Poll a (possibly async) predicate until it holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def channels():
    return [FakeChannel("email"), FakeChannel("push")]


@pytest.fixture
def service(tmp_path, upstream, channels):
    return build_service(tmp_path, upstream=upstream, channels=channels)
