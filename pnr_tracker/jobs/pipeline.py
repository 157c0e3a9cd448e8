"""The fetch -> detect -> dispatch pipeline for one PNR."""
import asyncio
import logging
from typing import Callable, List, Optional

from pnr_tracker.detect.detector import ChangeDetector
from pnr_tracker.dispatch.dispatcher import NotificationDispatcher
from pnr_tracker.errors import StoreWriteFailure, UnknownRecord, UpstreamPermanent, UpstreamTransient
from pnr_tracker.fetch.client import EXPIRED_STATUS
from pnr_tracker.fetch.single_flight import SingleFlight, SingleFlightFetcher
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.models import CheckOutcome, StatusSnapshot, TransitionKind
from pnr_tracker.store.state import StateDB

logger = logging.getLogger(__name__)

FinalizedListener = Callable[[str], None]


class StatusChecker:
    """Runs one status check for a PNR.

    Whole checks are coalesced per PNR: a scheduled check and a manual check
    that overlap share one fetch and one outcome, so a transition produces a
    single history entry and a single set of notifications.
    """

    def __init__(
        self,
        store: StateDB,
        fetcher: SingleFlightFetcher,
        dispatcher: NotificationDispatcher,
        detector: Optional[ChangeDetector] = None,
        events: Optional[EventRecorder] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.detector = detector or ChangeDetector()
        self.events = events or fetcher.events
        self._checks = SingleFlight()
        self._finalized_listeners: List[FinalizedListener] = []

    def add_finalized_listener(self, listener: FinalizedListener) -> None:
        """Called with the PNR whenever a check finalizes a record."""
        self._finalized_listeners.append(listener)

    async def check(self, pnr: str) -> CheckOutcome:
        """Check one PNR. Raises UnknownRecord; every other failure is in the outcome."""
        outcome, shared = await self._checks.do(pnr, lambda: self._run_check(pnr))
        if shared:
            outcome = outcome.model_copy(update={"coalesced": True})
        return outcome

    async def _run_check(self, pnr: str) -> CheckOutcome:
        record = await self.store.get_record(pnr)
        if record is None:
            raise UnknownRecord(pnr)
        if record.is_finalized:
            return CheckOutcome(pnr=pnr, ok=True, skipped_reason="finalized")

        try:
            snapshot = await self.fetcher.fetch(pnr)
        except UpstreamPermanent as e:
            snapshot = StatusSnapshot(
                pnr=pnr,
                status=e.status or EXPIRED_STATUS,
                finalized=True,
                attempts=e.attempts,
            )
        except UpstreamTransient as e:
            return self._completed(CheckOutcome(pnr=pnr, ok=False, error=str(e), error_kind=e.kind))

        async with self.store.record_lock(pnr):
            # Re-read under the lock: another check may have applied this status
            record = await self.store.get_record(pnr)
            if record is None:
                raise UnknownRecord(pnr)
            if record.is_finalized:
                return CheckOutcome(pnr=pnr, ok=True, skipped_reason="finalized")

            transition = self.detector.detect(record.current_status, snapshot)
            if transition.kind is TransitionKind.UNCHANGED:
                await self.store.touch_checked(pnr)
                return self._completed(CheckOutcome(pnr=pnr, ok=True, transition=transition))

            try:
                entry = await self.dispatcher.record(transition)
            except StoreWriteFailure as e:
                logger.error(f"Check failed for PNR {pnr}, no notifications sent: {e}")
                return self._completed(
                    CheckOutcome(pnr=pnr, ok=False, transition=transition, error=str(e), error_kind=e.kind)
                )
            # started under the lock so recovery never sees the entry without its fan-out
            delivery = self.dispatcher.begin(record, entry, transition)

        if transition.kind is TransitionKind.FINALIZED:
            self._notify_finalized(pnr)

        attempts = await asyncio.shield(delivery)
        return self._completed(
            CheckOutcome(
                pnr=pnr,
                ok=True,
                transition=transition,
                history_id=entry.id,
                notifications=attempts,
            )
        )

    def _notify_finalized(self, pnr: str) -> None:
        for listener in self._finalized_listeners:
            try:
                listener(pnr)
            except Exception as e:
                logger.error(f"Finalized listener failed for PNR {pnr}: {e}", exc_info=True)

    def _completed(self, outcome: CheckOutcome) -> CheckOutcome:
        self.events.emit(
            "check_completed",
            pnr=outcome.pnr,
            ok=outcome.ok,
            kind=outcome.transition.kind.value if outcome.transition else None,
            error_kind=outcome.error_kind,
        )
        return outcome
