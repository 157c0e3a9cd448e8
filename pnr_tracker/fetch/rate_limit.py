"""Global limiter for calls to the upstream status source."""
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class UpstreamLimiter:
    """Caps concurrent upstream calls and spaces their starts.

    Shared by every entry point (scheduler, manual checks, batches) so the
    upstream sees the same ceiling however many timers fire at once.
    """

    def __init__(self, max_concurrent: int, rate_per_second: float):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._last_request = 0.0
        self.active = 0
        self.peak = 0

    async def acquire(self) -> None:
        """Wait for a free slot, then for the rate interval."""
        await self._semaphore.acquire()
        try:
            async with self._lock:
                elapsed = time.monotonic() - self._last_request
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
                self._last_request = time.monotonic()
        except BaseException:
            self._semaphore.release()
            raise
        self.active += 1
        self.peak = max(self.peak, self.active)

    def release(self) -> None:
        self.active -= 1
        self._semaphore.release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()
