"""Status cache with TTL expiry, shielding the upstream from repeated lookups.

Two kinds of entries live here:

* ``pnr:status:<pnr>`` - last snapshot fetched from upstream for one PNR
* ``batch:check:<key>`` - a whole batch report, kept briefly so that
  near-simultaneous "check all" requests for the same PNR set are served once

The backend is pluggable. Any backend error is logged and treated as a miss
(reads) or ignored (writes): the cache must never fail a status check.
"""
import hashlib
import logging
import time
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple
import orjson

from pnr_tracker.config import config
from pnr_tracker.errors import CacheUnavailable
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.models import BatchReport, StatusSnapshot

logger = logging.getLogger(__name__)

STATUS_PREFIX = "pnr:status:"
BATCH_PREFIX = "batch:check:"


class CacheBackend(Protocol):
    """Minimal key/value store with per-key TTL."""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class MemoryCacheBackend:
    """In-process TTL map. Expired keys are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[bytes, float]] = {}

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl < 0:
            raise ValueError(f"TTL must be >= 0, got {ttl}")
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def batch_key(pnrs: Iterable[str]) -> str:
    """Stable key for a set of PNRs (order and duplicates ignored)."""
    joined = ",".join(sorted(set(pnrs)))
    return hashlib.sha1(joined.encode("ascii")).hexdigest()


class StatusCache:
    """Typed cache over a backend, degrading to misses on backend failure."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        events: Optional[EventRecorder] = None,
        status_ttl: float = config.STATUS_CACHE_TTL,
        batch_ttl: float = config.BATCH_CACHE_TTL,
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.events = events or EventRecorder()
        self.status_ttl = status_ttl
        self.batch_ttl = batch_ttl

    async def get(self, pnr: str) -> Optional[StatusSnapshot]:
        raw = await self._read(STATUS_PREFIX + pnr)
        if raw is None:
            return None
        try:
            return StatusSnapshot.model_validate(orjson.loads(raw))
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry for PNR {pnr}: {e}")
            await self.invalidate(pnr)
            return None

    async def put(self, pnr: str, snapshot: StatusSnapshot, ttl: Optional[float] = None) -> None:
        await self._write(
            STATUS_PREFIX + pnr,
            orjson.dumps(snapshot.model_dump(mode="json")),
            self.status_ttl if ttl is None else ttl,
        )

    async def invalidate(self, pnr: str) -> None:
        await self._delete(STATUS_PREFIX + pnr)

    async def get_batch_result(self, key: str) -> Optional[BatchReport]:
        raw = await self._read(BATCH_PREFIX + key)
        if raw is None:
            return None
        try:
            return BatchReport.model_validate(orjson.loads(raw))
        except ValueError as e:
            logger.warning(f"Discarding unreadable batch cache entry {key}: {e}")
            await self.invalidate_batch_result(key)
            return None

    async def put_batch_result(self, key: str, report: BatchReport, ttl: Optional[float] = None) -> None:
        await self._write(
            BATCH_PREFIX + key,
            orjson.dumps(report.model_dump(mode="json")),
            self.batch_ttl if ttl is None else ttl,
        )

    async def invalidate_batch_result(self, key: str) -> None:
        await self._delete(BATCH_PREFIX + key)

    async def _read(self, key: str) -> Optional[bytes]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            self._backend_failed("get", key, e)
            return None

    async def _write(self, key: str, value: bytes, ttl: float) -> None:
        if ttl < 0:
            raise ValueError(f"TTL must be >= 0, got {ttl}")
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            self._backend_failed("set", key, e)

    async def _delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            self._backend_failed("delete", key, e)

    def _backend_failed(self, operation: str, key: str, error: Exception) -> None:
        failure = error if isinstance(error, CacheUnavailable) else CacheUnavailable(str(error))
        logger.warning(f"Cache {operation} failed for {key}, continuing without cache: {failure}")
        self.events.emit("cache_error", operation=operation, key=key, error=str(failure))
