"""Tracking service: the operations exposed to the API and CLI."""
import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from pnr_tracker.cache.store import CacheBackend, StatusCache
from pnr_tracker.config import EVENTS_FILE, STATE_DB, config
from pnr_tracker.dispatch.channels import EmailChannel, InAppChannel, NotificationChannel, PushChannel
from pnr_tracker.dispatch.dispatcher import NotificationDispatcher
from pnr_tracker.errors import UnknownRecord
from pnr_tracker.fetch.client import UpstreamStatusClient
from pnr_tracker.fetch.rate_limit import UpstreamLimiter
from pnr_tracker.fetch.single_flight import RetryPolicy, SingleFlightFetcher, StatusSource
from pnr_tracker.jobs.archiver import RecordArchiver
from pnr_tracker.jobs.batch import BatchOrchestrator
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.jobs.pipeline import StatusChecker
from pnr_tracker.jobs.scheduler import BackgroundScheduler
from pnr_tracker.models import BatchReport, CheckOutcome, HistoryEntry, TrackedRecord
from pnr_tracker.store.state import StateDB
from pnr_tracker.validation import validate_pnr

logger = logging.getLogger(__name__)


class TrackingService:
    """Owns the engine components and exposes the tracking operations."""

    def __init__(
        self,
        store: StateDB,
        cache: StatusCache,
        fetcher: SingleFlightFetcher,
        dispatcher: NotificationDispatcher,
        checker: StatusChecker,
        batch: BatchOrchestrator,
        scheduler: BackgroundScheduler,
        archiver: RecordArchiver,
        events: EventRecorder,
        client: Optional[UpstreamStatusClient] = None,
    ):
        self.store = store
        self.cache = cache
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.checker = checker
        self.batch = batch
        self.scheduler = scheduler
        self.archiver = archiver
        self.events = events
        self.client = client
        self._initialized = False

    @classmethod
    def create(
        cls,
        db_path: Path = STATE_DB,
        source: Optional[StatusSource] = None,
        channels: Optional[Sequence[NotificationChannel]] = None,
        cache_backend: Optional[CacheBackend] = None,
        limiter: Optional[UpstreamLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events_path: Optional[Path] = EVENTS_FILE,
        clock: Callable[[], float] = time.time,
    ) -> "TrackingService":
        """Wire up every component from configuration.

        `source` defaults to the HTTP upstream client and `channels` to
        email, push and in-app.
        """
        events = EventRecorder(export_path=events_path)
        store = StateDB(db_path)
        cache = StatusCache(cache_backend, events=events)

        client = None
        if source is None:
            client = source = UpstreamStatusClient()
        limiter = limiter or UpstreamLimiter(config.UPSTREAM_CONCURRENCY, config.UPSTREAM_RATE_PER_SECOND)
        fetcher = SingleFlightFetcher(source, cache, limiter=limiter, retry_policy=retry_policy, events=events)

        if channels is None:
            channels = [EmailChannel(), PushChannel(), InAppChannel(store)]
        dispatcher = NotificationDispatcher(store, channels, events=events)
        checker = StatusChecker(store, fetcher, dispatcher, events=events)
        batch = BatchOrchestrator(store, checker, cache)
        archiver = RecordArchiver(store)
        scheduler = BackgroundScheduler(store, checker, events=events, archiver=archiver, clock=clock)

        return cls(
            store=store,
            cache=cache,
            fetcher=fetcher,
            dispatcher=dispatcher,
            checker=checker,
            batch=batch,
            scheduler=scheduler,
            archiver=archiver,
            events=events,
            client=client,
        )

    # Lifecycle

    async def initialize(self) -> None:
        if not self._initialized:
            await self.store.initialize()
            self._initialized = True

    async def start(self) -> None:
        await self.initialize()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def aclose(self) -> None:
        """Stop the scheduler, flush counters and close network clients."""
        await self.stop()
        try:
            await self.events.export()
        except OSError as e:
            logger.warning(f"Could not export metrics on shutdown: {e}")
        await self.dispatcher.aclose()
        if self.client is not None:
            await self.client.aclose()

    # Tracking

    async def register_tracking(self, record: TrackedRecord) -> TrackedRecord:
        """Start (or restart) tracking a PNR and schedule its checks.

        Re-registering an existing PNR updates owner and settings and
        reactivates it if it had been finalized; its status and history are
        kept.
        """
        validate_pnr(record.pnr)
        existing = await self.store.get_record(record.pnr)
        updates = {"is_finalized": False}
        if existing is not None:
            updates.update(
                current_status=existing.current_status,
                last_checked_at=existing.last_checked_at,
                created_at=existing.created_at,
            )
        record = record.model_copy(update=updates)

        async with self.store.record_lock(record.pnr):
            await self.store.upsert_record(record)
        await self.cache.invalidate(record.pnr)
        await self.scheduler.schedule_status_check(record.pnr, record.check_interval)

        logger.info(
            f"{'Re-registered' if existing else 'Registered'} PNR {record.pnr} for owner {record.owner_id}"
        )
        return await self.store.get_record(record.pnr)

    async def cancel_tracking(self, pnr: str) -> bool:
        """Stop scheduled checks, keeping the record and its history."""
        await self.get_record(pnr)
        return await self.scheduler.cancel_status_check(pnr)

    async def remove_tracking(self, pnr: str) -> bool:
        """Stop tracking and delete the record with its history."""
        await self.get_record(pnr)
        await self.scheduler.cancel_status_check(pnr)
        removed = await self.store.delete_record(pnr)
        await self.cache.invalidate(pnr)
        logger.info(f"Removed PNR {pnr}")
        return removed

    async def get_record(self, pnr: str) -> TrackedRecord:
        validate_pnr(pnr)
        record = await self.store.get_record(pnr)
        if record is None:
            raise UnknownRecord(pnr)
        return record

    # Checks

    async def check_now(self, pnr: str) -> CheckOutcome:
        """Check one PNR immediately. Raises InvalidRecordId or UnknownRecord."""
        validate_pnr(pnr)
        return await self.checker.check(pnr)

    async def check_all(self, pnrs: Iterable[str], concurrency_limit: Optional[int] = None) -> BatchReport:
        return await self.batch.check_all(pnrs, concurrency_limit=concurrency_limit)

    # Queries

    async def get_history(self, pnr: str, limit: int = 50, before_id: Optional[int] = None) -> list[HistoryEntry]:
        """History newest-first; page with the id of the last entry seen."""
        await self.get_record(pnr)
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        return await self.store.get_history(pnr, limit=limit, before_id=before_id)

    async def get_cached_status(self, pnr: str) -> Optional[str]:
        validate_pnr(pnr)
        snapshot = await self.cache.get(pnr)
        return snapshot.status if snapshot else None

    async def get_stats(self) -> dict:
        stats = await self.store.get_stats()
        stats["scheduler"] = {
            "running": self.scheduler.running,
            "jobs": len(self.scheduler.jobs()),
        }
        stats["upstream"] = {
            "calls": self.fetcher.upstream_calls,
            "peak_concurrency": self.fetcher.limiter.peak,
        }
        stats["metrics"] = self.events.metrics.get_summary()
        return stats
