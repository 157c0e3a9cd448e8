"""History recording and notification fan-out for status transitions.

History is the durable source of truth and is written first; if that write
fails nothing is sent. Channels are then run as independent tasks: each one
claims its (history entry, channel) slot before sending, so a transition is
never sent twice on the same channel, and a failing channel only produces a
failed attempt record.

A fan-out outlives the check that started it. Entries whose sends never
finished, because the process stopped in between, are picked up again by
`recover`.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Sequence

from pnr_tracker.dispatch.channels import NotificationChannel
from pnr_tracker.errors import ChannelDeliveryFailure
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.models import (
    ChannelOutcome,
    HistoryEntry,
    NotificationAttempt,
    StatusSnapshot,
    TrackedRecord,
    Transition,
    TransitionKind,
)
from pnr_tracker.store.state import StateDB

logger = logging.getLogger(__name__)


def replay_transition(entry: HistoryEntry) -> Transition:
    """Rebuild the transition a stored history entry was written for."""
    return Transition(
        kind=entry.kind,
        pnr=entry.pnr,
        old_status=entry.previous_status,
        new_status=entry.new_status,
        category=entry.category,
        snapshot=StatusSnapshot(
            pnr=entry.pnr,
            status=entry.new_status,
            fetched_at=entry.transitioned_at,
            finalized=entry.kind is TransitionKind.FINALIZED,
        ),
    )


class NotificationDispatcher:
    def __init__(
        self,
        store: StateDB,
        channels: Sequence[NotificationChannel],
        events: Optional[EventRecorder] = None,
    ):
        self.store = store
        self.channels = list(channels)
        self.events = events or EventRecorder()
        self._pending: Dict[int, asyncio.Task] = {}

    async def record(self, transition: Transition) -> HistoryEntry:
        """Append history and update the record. Raises StoreWriteFailure."""
        entry = await self.store.apply_transition(transition)
        logger.info(
            f"PNR {transition.pnr}: {transition.kind.value} "
            f"{transition.old_status!r} -> {transition.new_status!r} (history #{entry.id})"
        )
        return entry

    def begin(self, record: TrackedRecord, entry: HistoryEntry, transition: Transition) -> asyncio.Task:
        """Start the fan-out for a history entry in its own task, or return the one already running."""
        task = self._pending.get(entry.id)
        if task is None:
            task = asyncio.ensure_future(self._fan_out(record, entry, transition))
            self._pending[entry.id] = task
            task.add_done_callback(lambda done: self._pending.pop(entry.id, None))
        return task

    async def notify(
        self,
        record: TrackedRecord,
        entry: HistoryEntry,
        transition: Transition,
    ) -> list[NotificationAttempt]:
        """Send on every channel concurrently and collect one attempt per channel.

        The fan-out is shielded: cancelling the caller leaves the sends running.
        """
        return await asyncio.shield(self.begin(record, entry, transition))

    def in_flight(self, history_id: int) -> bool:
        return history_id in self._pending

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for running fan-outs. False if some were still running at the timeout."""
        if not self._pending:
            return True
        _, still_running = await asyncio.wait(list(self._pending.values()), timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} notification fan-outs still running after {timeout}s")
        return not still_running

    async def recover(self, since: datetime) -> int:
        """Re-dispatch history entries whose channel attempts are missing or never finished.

        Covers transitions committed by a process that stopped before its sends
        completed. Returns the number of entries dispatched again.
        """
        names = [channel.name for channel in self.channels]
        recovered = []
        for entry in await self.store.list_undispatched(names, since):
            async with self.store.record_lock(entry.pnr):
                if self.in_flight(entry.id):
                    continue
                record = await self.store.get_record(entry.pnr)
                if record is None:
                    continue
                released = await self.store.release_pending_claims(entry.id)
                logger.info(
                    f"Re-dispatching history #{entry.id} for PNR {entry.pnr} "
                    f"({released} unfinished claims released)"
                )
                recovered.append(self.begin(record, entry, replay_transition(entry)))
        if recovered:
            await asyncio.shield(asyncio.gather(*recovered, return_exceptions=True))
        return len(recovered)

    async def _fan_out(
        self,
        record: TrackedRecord,
        entry: HistoryEntry,
        transition: Transition,
    ) -> list[NotificationAttempt]:
        results = await asyncio.gather(
            *(self._deliver(channel, record, entry, transition) for channel in self.channels)
        )
        return [attempt for attempt in results if attempt is not None]

    async def dispatch(self, record: TrackedRecord, transition: Transition) -> tuple[HistoryEntry, list[NotificationAttempt]]:
        entry = await self.record(transition)
        attempts = await self.notify(record, entry, transition)
        return entry, attempts

    async def _deliver(
        self,
        channel: NotificationChannel,
        record: TrackedRecord,
        entry: HistoryEntry,
        transition: Transition,
    ) -> Optional[NotificationAttempt]:
        try:
            claimed = await self.store.claim_attempt(entry.id, record.pnr, channel.name)
        except Exception as e:
            logger.error(f"Could not claim {channel.name} notification for PNR {record.pnr}: {e}")
            return NotificationAttempt(
                pnr=record.pnr,
                history_id=entry.id,
                channel=channel.name,
                outcome=ChannelOutcome.FAILED,
                error=f"claim failed: {e}",
            )
        if not claimed:
            logger.debug(f"{channel.name} notification for history #{entry.id} already dispatched")
            return None

        settings = record.notifications
        error = None
        if not channel.is_enabled(settings):
            outcome = ChannelOutcome.SKIPPED
        elif transition.category is not None and transition.category not in settings.categories:
            outcome = ChannelOutcome.SKIPPED
        else:
            try:
                outcome = await channel.send(record, transition, settings)
            except ChannelDeliveryFailure as e:
                outcome, error = ChannelOutcome.FAILED, str(e)
            except Exception as e:
                logger.error(f"{channel.name} channel crashed for PNR {record.pnr}: {e}", exc_info=True)
                outcome, error = ChannelOutcome.FAILED, str(ChannelDeliveryFailure(channel.name, str(e)))

        attempt = NotificationAttempt(
            pnr=record.pnr,
            history_id=entry.id,
            channel=channel.name,
            outcome=outcome,
            error=error,
        )
        try:
            await self.store.complete_attempt(attempt)
        except Exception as e:
            logger.warning(f"Could not record {channel.name} outcome for PNR {record.pnr}: {e}")

        if outcome is ChannelOutcome.FAILED:
            logger.warning(f"{channel.name} notification failed for PNR {record.pnr}: {error}")
        self.events.emit(
            "notification_outcome",
            pnr=record.pnr,
            channel=channel.name,
            outcome=outcome.value,
            history_id=entry.id,
        )
        return attempt

    async def aclose(self) -> None:
        for channel in self.channels:
            await channel.aclose()
