"""Archiving of past journeys and history retention."""
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from pnr_tracker.config import config
from pnr_tracker.models import TrackedRecord, utcnow
from pnr_tracker.store.state import StateDB

logger = logging.getLogger(__name__)

_NUMERIC_DATE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{4})$")
_COMPLETED = ("JOURNEY COMPLETED", "COMPLETED", "TRAVELLED")


def parse_travel_date(value: Optional[str]) -> Optional[date]:
    """Parse DD-MM-YYYY, DD/MM/YYYY, DD.MM.YYYY, 'DD Mon YYYY' or ISO dates."""
    if not value or not value.strip():
        return None
    text = value.strip()

    match = _NUMERIC_DATE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    for fmt in ("%d %b %Y", "%d %B %Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def is_journey_completed(status: Optional[str]) -> bool:
    if not status:
        return False
    text = status.upper()
    return any(keyword in text for keyword in _COMPLETED)


@dataclass
class ArchiveStats:
    total_processed: int = 0
    archived: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    history_purged: int = 0
    processing_time: float = 0.0


class RecordArchiver:
    """Finalizes records whose journey is over and purges old history."""

    def __init__(
        self,
        store: StateDB,
        days_after_travel: int = config.ARCHIVE_DAYS_AFTER_TRAVEL,
        retention_days: int = config.HISTORY_RETENTION_DAYS,
        today: Callable[[], date] = lambda: utcnow().date(),
    ):
        self.store = store
        self.days_after_travel = days_after_travel
        self.retention_days = retention_days
        self.today = today
        self._archived_listeners: List[Callable[[str], None]] = []

    def add_archived_listener(self, listener: Callable[[str], None]) -> None:
        self._archived_listeners.append(listener)

    def archive_reason(self, record: TrackedRecord) -> Optional[str]:
        if is_journey_completed(record.current_status):
            return "journey_completed"
        travel_date = parse_travel_date(record.travel_date)
        if travel_date is not None and self.today() > travel_date + timedelta(days=self.days_after_travel):
            return "date_completed"
        return None

    async def sweep(self) -> ArchiveStats:
        """Finalize eligible records, then apply history retention."""
        start_time = time.time()
        stats = ArchiveStats()

        for record in await self.store.list_records(active_only=True):
            stats.total_processed += 1
            reason = self.archive_reason(record)
            if reason is None:
                continue
            try:
                await self.store.mark_finalized(record.pnr)
            except Exception as e:
                message = f"Failed to archive PNR {record.pnr}: {e}"
                logger.error(message)
                stats.errors.append(message)
                continue
            stats.archived.append(record.pnr)
            logger.info(f"Archived PNR {record.pnr} ({reason}, travel date: {record.travel_date})")
            for listener in self._archived_listeners:
                listener(record.pnr)

        stats.history_purged = await self.purge_history()
        stats.processing_time = time.time() - start_time
        logger.info(
            f"Archive sweep: {stats.total_processed} checked, {len(stats.archived)} archived, "
            f"{stats.history_purged} history entries purged, {len(stats.errors)} errors"
        )
        return stats

    async def purge_history(self, older_than_days: Optional[int] = None) -> int:
        days = self.retention_days if older_than_days is None else older_than_days
        if days <= 0:
            return 0
        cutoff = utcnow() - timedelta(days=days)
        return await self.store.purge_history(cutoff)
