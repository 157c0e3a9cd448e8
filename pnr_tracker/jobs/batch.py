"""On-demand "check all" across a set of PNRs."""
import asyncio
import logging
import time
from typing import Iterable, Optional

from pnr_tracker.cache.store import StatusCache, batch_key
from pnr_tracker.config import config
from pnr_tracker.errors import InvalidBatch, UnknownRecord
from pnr_tracker.jobs.pipeline import StatusChecker
from pnr_tracker.models import BatchReport, CheckOutcome, utcnow
from pnr_tracker.store.state import StateDB
from pnr_tracker.validation import is_valid_pnr

logger = logging.getLogger(__name__)


class BatchOrchestrator:
    """Runs the shared status checker over many PNRs with bounded concurrency.

    `concurrency_limit` bounds this batch's own checks; the upstream-wide cap
    is enforced by the fetcher's limiter, which scheduled checks share.
    """

    def __init__(
        self,
        store: StateDB,
        checker: StatusChecker,
        cache: StatusCache,
        concurrency_limit: int = config.BATCH_CONCURRENCY,
    ):
        self.store = store
        self.checker = checker
        self.cache = cache
        self.concurrency_limit = concurrency_limit

    async def check_all(self, pnrs: Iterable[str], concurrency_limit: Optional[int] = None) -> BatchReport:
        ids = await self._validate(pnrs)
        limit = self.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise InvalidBatch(f"concurrency_limit must be >= 1, got {limit}")

        key = batch_key(ids)
        cached = await self.cache.get_batch_result(key)
        if cached is not None:
            logger.info(f"Serving batch {key[:8]} ({len(ids)} PNRs) from cache")
            return cached.model_copy(update={"from_cache": True})

        start_time = time.time()
        report = BatchReport(batch_key=key)
        semaphore = asyncio.Semaphore(limit)

        async def check_one(pnr: str) -> CheckOutcome:
            async with semaphore:
                try:
                    return await self.checker.check(pnr)
                except UnknownRecord as e:
                    # removed while the batch was running
                    return CheckOutcome(pnr=pnr, ok=False, error=str(e), error_kind=e.kind)
                except Exception as e:
                    logger.error(f"Error checking PNR {pnr}: {e}", exc_info=True)
                    return CheckOutcome(pnr=pnr, ok=False, error=str(e), error_kind="internal_error")

        outcomes = await asyncio.gather(*(check_one(pnr) for pnr in ids))
        report.outcomes = {outcome.pnr: outcome for outcome in outcomes}
        report.finished_at = utcnow()

        logger.info(
            f"Batch {key[:8]} complete: {len(ids)} PNRs, "
            f"{report.succeeded} ok, {report.failed} failed in {time.time() - start_time:.2f}s"
        )
        await self.cache.put_batch_result(key, report)
        return report

    async def _validate(self, pnrs: Iterable[str]) -> list[str]:
        if pnrs is None or isinstance(pnrs, str):
            raise InvalidBatch("Batch must be a collection of PNRs")
        unique = set(pnrs)
        if not unique:
            raise InvalidBatch("Batch is empty")
        malformed = [pnr for pnr in unique if not is_valid_pnr(pnr)]
        if malformed:
            raise InvalidBatch(f"Malformed PNRs: {', '.join(map(str, malformed))}")
        ids = sorted(unique)
        unknown = [pnr for pnr in ids if await self.store.get_record(pnr) is None]
        if unknown:
            raise InvalidBatch(f"Unknown PNRs: {', '.join(unknown)}")
        return ids
