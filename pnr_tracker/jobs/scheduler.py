"""Background scheduler for recurring per-PNR status checks.

All jobs live in one heap ordered by next fire time. A single timer task moves
due jobs onto a queue served by a fixed pool of workers, so the number of
tracked PNRs does not change the number of tasks.

Per PNR: IDLE -> SCHEDULED -> CHECKING -> SCHEDULED, until the record is
finalized (job removed for good) or tracking is cancelled.
"""
import asyncio
import heapq
import itertools
import logging
import time
from collections import defaultdict
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pnr_tracker.config import config
from pnr_tracker.errors import UnknownRecord
from pnr_tracker.jobs.archiver import RecordArchiver
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.jobs.pipeline import StatusChecker
from pnr_tracker.models import CheckOutcome, JobState, ScheduledJob, utcnow
from pnr_tracker.store.state import StateDB

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(
        self,
        store: StateDB,
        checker: StatusChecker,
        events: Optional[EventRecorder] = None,
        workers: int = config.SCHEDULER_WORKERS,
        default_interval: float = config.CHECK_INTERVAL,
        max_interval: float = config.SCHEDULER_MAX_INTERVAL,
        sweep_interval: float = config.SWEEP_INTERVAL,
        archiver: Optional[RecordArchiver] = None,
        clock: Callable[[], float] = time.time,
        drain_timeout: float = config.DRAIN_TIMEOUT,
        recovery_hours: float = config.NOTIFY_RECOVERY_HOURS,
    ):
        self.store = store
        self.checker = checker
        self.events = events or checker.events
        self.workers = workers
        self.default_interval = default_interval
        self.max_interval = max_interval
        self.sweep_interval = sweep_interval
        self.archiver = archiver
        self.clock = clock
        self.drain_timeout = drain_timeout
        self.recovery_hours = recovery_hours

        self._jobs: Dict[str, ScheduledJob] = {}
        self._states: Dict[str, JobState] = {}
        self._heap: List[Tuple[float, int, ScheduledJob]] = []
        self._seq = itertools.count()
        self._job_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._queue: Optional[asyncio.Queue] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False

        checker.add_finalized_listener(self.handle_finalized)
        if archiver is not None:
            archiver.add_archived_listener(self.handle_finalized)

    # Introspection

    def get_job(self, pnr: str) -> Optional[ScheduledJob]:
        return self._jobs.get(pnr)

    def state(self, pnr: str) -> JobState:
        return self._states.get(pnr, JobState.IDLE)

    def jobs(self) -> List[ScheduledJob]:
        return sorted(self._jobs.values(), key=lambda job: job.next_fire_at)

    # Lifecycle

    async def start(self) -> None:
        """Start timers and workers, resuming persisted jobs. Idempotent."""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.running = True
        self._queue = asyncio.Queue()
        self._wakeup = asyncio.Event()

        for job in await self.store.list_jobs():
            self._install(job)

        self._tasks = [asyncio.create_task(self._timer_loop(), name="scheduler-timer")]
        self._tasks += [
            asyncio.create_task(self._worker(index), name=f"scheduler-worker-{index}")
            for index in range(self.workers)
        ]
        if self.archiver is not None and self.sweep_interval > 0:
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="scheduler-sweep"))
        self._tasks.append(asyncio.create_task(self.recover_notifications(), name="scheduler-recovery"))
        logger.info(f"Scheduler started: {len(self._jobs)} jobs resumed, {self.workers} workers")

    async def stop(self) -> None:
        """Cancel all timers and workers, then wait for notification sends already under way.

        Checks in flight keep running to completion; persisted jobs are left untouched.
        """
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.checker.dispatcher.drain(self.drain_timeout)
        self._heap.clear()
        self._jobs.clear()
        self._states.clear()
        self._queue = None
        self._wakeup = None
        logger.info("Scheduler stopped")

    # Job management

    async def schedule_status_check(self, pnr: str, interval: Optional[float] = None) -> Optional[ScheduledJob]:
        """Create or replace the job for a PNR; first fire is one interval from now.

        No-op for unknown or finalized records.
        """
        async with self._job_locks[pnr]:
            record = await self.store.get_record(pnr)
            if record is None:
                logger.warning(f"Not scheduling PNR {pnr}: not tracked")
                return None
            if record.is_finalized:
                logger.info(f"Not scheduling PNR {pnr}: record is finalized")
                return None

            if interval is None:
                interval = record.check_interval or self.default_interval
            if interval <= 0:
                raise ValueError(f"interval must be > 0, got {interval}")
            job = ScheduledJob(pnr=pnr, interval=interval, next_fire_at=self.clock() + interval)
            await self.store.save_job(job)
            self._install(job)

        self.events.emit("job_scheduled", pnr=pnr, interval=interval, next_fire_at=job.next_fire_at)
        return job

    async def cancel_status_check(self, pnr: str) -> bool:
        """Remove the job for a PNR. Idempotent; a running check is not aborted."""
        async with self._job_locks[pnr]:
            job = self._jobs.pop(pnr, None)
            deleted = await self.store.delete_job(pnr)
            cancelled = job is not None or deleted
            # finalization wins over a concurrent cancel
            if cancelled and self._states.get(pnr) is not JobState.FINALIZED:
                self._states[pnr] = JobState.CANCELLED
        self._forget_lock(pnr)
        if not cancelled:
            return False
        self.events.emit("job_cancelled", pnr=pnr)
        return True

    def handle_finalized(self, pnr: str) -> None:
        """Drop the job of a finalized record. The store row is removed with the transition."""
        job = self._jobs.pop(pnr, None)
        already = self._states.get(pnr) is JobState.FINALIZED
        self._states[pnr] = JobState.FINALIZED
        self._forget_lock(pnr)
        if job is not None or not already:
            self.events.emit("job_finalized", pnr=pnr)

    def backoff_delay(self, job: ScheduledJob) -> float:
        """Interval to the next fire, stretched after consecutive failures."""
        if job.consecutive_failures <= 0:
            return job.interval
        delay = job.interval * (2 ** job.consecutive_failures)
        return min(delay, max(self.max_interval, job.interval))

    def _forget_lock(self, pnr: str) -> None:
        lock = self._job_locks.get(pnr)
        if lock is not None and not lock.locked():
            del self._job_locks[pnr]

    def _install(self, job: ScheduledJob) -> None:
        self._jobs[job.pnr] = job
        self._states[job.pnr] = JobState.SCHEDULED
        heapq.heappush(self._heap, (job.next_fire_at, next(self._seq), job))
        if self._wakeup is not None:
            self._wakeup.set()

    def _is_current(self, fire_at: float, job: ScheduledJob) -> bool:
        return (
            self._jobs.get(job.pnr) is job
            and job.next_fire_at == fire_at
            and self._states.get(job.pnr) is JobState.SCHEDULED
        )

    # Loops

    async def _timer_loop(self) -> None:
        while True:
            self._wakeup.clear()
            now = self.clock()
            while self._heap and self._heap[0][0] <= now:
                fire_at, _, job = heapq.heappop(self._heap)
                if not self._is_current(fire_at, job):
                    continue
                self._states[job.pnr] = JobState.CHECKING
                self._queue.put_nowait(job)

            timeout = self._heap[0][0] - now if self._heap else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            except Exception as e:
                logger.error(f"Worker {index} failed on PNR {job.pnr}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: ScheduledJob) -> None:
        pnr = job.pnr
        self.events.emit("job_fired", pnr=pnr, consecutive_failures=job.consecutive_failures)
        try:
            outcome = await self.checker.check(pnr)
        except UnknownRecord:
            logger.warning(f"PNR {pnr} is no longer tracked, dropping its job")
            async with self._job_locks[pnr]:
                if self._jobs.get(pnr) is job:
                    del self._jobs[pnr]
                    self._states.pop(pnr, None)
                await self.store.delete_job(pnr)
            self._forget_lock(pnr)
            return
        except Exception as e:
            logger.error(f"Scheduled check crashed for PNR {pnr}: {e}", exc_info=True)
            outcome = CheckOutcome(pnr=pnr, ok=False, error=str(e), error_kind="internal_error")

        if outcome.finalized or outcome.skipped_reason == "finalized":
            self.handle_finalized(pnr)
            return

        async with self._job_locks[pnr]:
            current = self._jobs.get(pnr)
            if current is job:
                if outcome.ok:
                    job.consecutive_failures = 0
                else:
                    job.consecutive_failures += 1
                delay = self.backoff_delay(job)
                job.next_fire_at = self.clock() + delay
                self._install(job)
                await self.store.save_job(job)

        if current is not job:
            # cancelled or replaced while the check was running
            if current is None:
                self._forget_lock(pnr)
            return

        self.events.emit(
            "job_scheduled",
            pnr=pnr,
            interval=job.interval,
            next_fire_at=job.next_fire_at,
            consecutive_failures=job.consecutive_failures,
        )
        if not outcome.ok:
            logger.warning(
                f"Check failed for PNR {pnr} ({outcome.error_kind}), "
                f"retrying in {delay:.0f}s after {job.consecutive_failures} consecutive failures"
            )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.run_sweep()

    async def recover_notifications(self) -> int:
        """Send notifications for recent transitions whose sends never finished."""
        since = utcnow() - timedelta(hours=self.recovery_hours)
        try:
            recovered = await self.checker.dispatcher.recover(since)
        except Exception as e:
            logger.error(f"Notification recovery failed: {e}", exc_info=True)
            return 0
        if recovered:
            logger.info(f"Recovered notifications for {recovered} history entries")
        return recovered

    async def run_sweep(self) -> None:
        """Archive finished journeys, apply retention, retry unfinished notifications and export counters."""
        if self.archiver is not None:
            try:
                await self.archiver.sweep()
            except Exception as e:
                logger.error(f"Archive sweep failed: {e}", exc_info=True)
        await self.recover_notifications()
        self.events.metrics.report()
        try:
            await self.events.export()
        except OSError as e:
            logger.warning(f"Could not export metrics: {e}")
