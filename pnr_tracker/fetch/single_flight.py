"""Single-flight fetching: at most one upstream call per PNR at any time.

Callers asking for the same PNR while a call is outstanding attach to it and
receive the same snapshot (or the same error). Transient failures are retried
inside that one call, so waiters share the retries as well.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pnr_tracker.cache.store import StatusCache
from pnr_tracker.config import config
from pnr_tracker.errors import UpstreamPermanent, UpstreamTransient
from pnr_tracker.fetch.rate_limit import UpstreamLimiter
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.models import StatusSnapshot

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    async def fetch_status(self, pnr: str) -> StatusSnapshot:
        ...


class SingleFlight:
    """Per-key call coalescing.

    `do()` looks up and registers the in-flight task without yielding to the
    event loop in between, so two callers can never both start a call for the
    same key. The call runs in its own task and every caller, the starter
    included, awaits it through `asyncio.shield`: cancelling one caller never
    cancels the call the others are waiting on.
    """

    def __init__(self):
        self._calls: Dict[str, asyncio.Task] = {}
        self._waiters: Dict[str, int] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def waiters(self, key: str) -> int:
        return self._waiters.get(key, 0)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Run `fn` once per key; returns (result, shared)."""
        task = self._calls.get(key)
        shared = task is not None
        if shared:
            self._waiters[key] = self._waiters.get(key, 0) + 1
        else:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            self._waiters[key] = 0
            task.add_done_callback(lambda done: self._finished(key, done))
        return await asyncio.shield(task), shared

    def _finished(self, key: str, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
            self._waiters.pop(key, None)
        # mark retrieved so a failure nobody waited for does not warn
        if not task.cancelled():
            task.exception()


@dataclass
class RetryPolicy:
    """Retry ceiling and exponential backoff for transient upstream failures."""

    max_attempts: int = config.UPSTREAM_MAX_ATTEMPTS
    multiplier: float = config.UPSTREAM_BACKOFF_MULTIPLIER
    min_wait: float = config.UPSTREAM_BACKOFF_MIN
    max_wait: float = config.UPSTREAM_BACKOFF_MAX

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(UpstreamTransient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


class SingleFlightFetcher:
    """Cache-first status fetching with per-PNR call coalescing."""

    def __init__(
        self,
        source: StatusSource,
        cache: StatusCache,
        limiter: Optional[UpstreamLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventRecorder] = None,
    ):
        self.source = source
        self.cache = cache
        self.limiter = limiter or UpstreamLimiter(config.UPSTREAM_CONCURRENCY, config.UPSTREAM_RATE_PER_SECOND)
        self.retry_policy = retry_policy or RetryPolicy()
        self.events = events or cache.events
        self._flights = SingleFlight()
        self.upstream_calls = 0

    def in_flight(self, pnr: str) -> bool:
        return self._flights.in_flight(pnr)

    async def fetch(self, pnr: str) -> StatusSnapshot:
        """Return the cached snapshot, or the result of the one in-flight upstream call."""
        cached = await self.cache.get(pnr)
        if cached is not None:
            self.events.emit("cache_hit", pnr=pnr)
            return cached
        self.events.emit("cache_miss", pnr=pnr)

        if self._flights.in_flight(pnr):
            self.events.emit("single_flight_coalesced", pnr=pnr, waiters=self._flights.waiters(pnr) + 1)
        snapshot, _ = await self._flights.do(pnr, lambda: self._fetch_upstream(pnr))
        return snapshot

    async def _fetch_upstream(self, pnr: str) -> StatusSnapshot:
        attempts = 0
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        self.events.emit("upstream_retry", pnr=pnr, attempt=attempts)
                    async with self.limiter:
                        self.upstream_calls += 1
                        snapshot = await self.source.fetch_status(pnr)
        except UpstreamPermanent as e:
            e.attempts = attempts
            logger.info(f"Upstream reports PNR {pnr} as permanently unavailable: {e}")
            raise
        except UpstreamTransient as e:
            logger.warning(f"Giving up on PNR {pnr} after {attempts} attempts: {e}")
            raise

        if snapshot.attempts != attempts:
            snapshot = snapshot.model_copy(update={"attempts": attempts})
        await self.cache.put(pnr, snapshot)
        return snapshot
