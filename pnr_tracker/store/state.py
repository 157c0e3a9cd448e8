"""SQLite state database for tracked records, history, jobs and notifications."""
import asyncio
import aiosqlite
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence

from pnr_tracker.config import STATE_DB
from pnr_tracker.errors import StoreWriteFailure
from pnr_tracker.models import (
    ChangeCategory,
    ChannelOutcome,
    HistoryEntry,
    NotificationAttempt,
    NotificationSettings,
    ScheduledJob,
    TrackedRecord,
    Transition,
    TransitionKind,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tracked_records (
        pnr TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        origin TEXT NOT NULL DEFAULT '',
        destination TEXT NOT NULL DEFAULT '',
        travel_date TEXT,
        current_status TEXT,
        is_finalized INTEGER NOT NULL DEFAULT 0,
        last_checked_at TIMESTAMP,
        check_interval REAL,
        notifications TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_active ON tracked_records(is_finalized)",
    "CREATE INDEX IF NOT EXISTS idx_records_owner ON tracked_records(owner_id)",
    """
    CREATE TABLE IF NOT EXISTS status_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pnr TEXT NOT NULL,
        previous_status TEXT,
        new_status TEXT NOT NULL,
        kind TEXT NOT NULL,
        category TEXT,
        transitioned_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_pnr ON status_history(pnr, id DESC)",
    """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        pnr TEXT PRIMARY KEY,
        interval REAL NOT NULL,
        next_fire_at REAL NOT NULL,
        consecutive_failures INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_attempts (
        history_id INTEGER NOT NULL,
        channel TEXT NOT NULL,
        pnr TEXT NOT NULL,
        outcome TEXT NOT NULL,
        attempted_at TIMESTAMP NOT NULL,
        error TEXT,
        PRIMARY KEY (history_id, channel)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS in_app_notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        pnr TEXT NOT NULL,
        category TEXT,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_in_app_owner ON in_app_notifications(owner_id, id DESC)",
]

PENDING = "pending"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateDB:
    """Durable store. Writes for one PNR are serialized with `record_lock`."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def record_lock(self, pnr: str) -> asyncio.Lock:
        return self._locks[pnr]

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
            logger.info(f"State database initialized at {self.db_path}")

    # Tracked records

    async def upsert_record(self, record: TrackedRecord) -> None:
        """Insert or replace a tracked record (created_at is kept on update)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO tracked_records (
                    pnr, owner_id, origin, destination, travel_date, current_status,
                    is_finalized, last_checked_at, check_interval, notifications, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(pnr) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    origin = excluded.origin,
                    destination = excluded.destination,
                    travel_date = excluded.travel_date,
                    current_status = excluded.current_status,
                    is_finalized = excluded.is_finalized,
                    last_checked_at = excluded.last_checked_at,
                    check_interval = excluded.check_interval,
                    notifications = excluded.notifications
                """,
                (
                    record.pnr,
                    record.owner_id,
                    record.origin,
                    record.destination,
                    record.travel_date,
                    record.current_status,
                    int(record.is_finalized),
                    _ts(record.last_checked_at),
                    record.check_interval,
                    record.notifications.model_dump_json(),
                    _ts(record.created_at),
                ),
            )
            await db.commit()

    async def get_record(self, pnr: str) -> Optional[TrackedRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM tracked_records WHERE pnr = ?", (pnr,))
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def list_records(self, active_only: bool = False, owner_id: Optional[str] = None) -> list[TrackedRecord]:
        query = "SELECT * FROM tracked_records WHERE 1 = 1"
        params: list = []
        if active_only:
            query += " AND is_finalized = 0"
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY pnr"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            return [self._row_to_record(row) for row in await cursor.fetchall()]

    async def delete_record(self, pnr: str) -> bool:
        """Remove a record with its history, job and notification attempts."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM tracked_records WHERE pnr = ?", (pnr,))
            deleted = cursor.rowcount > 0
            await db.execute("DELETE FROM status_history WHERE pnr = ?", (pnr,))
            await db.execute("DELETE FROM scheduled_jobs WHERE pnr = ?", (pnr,))
            await db.execute("DELETE FROM notification_attempts WHERE pnr = ?", (pnr,))
            await db.commit()
        self._locks.pop(pnr, None)
        return deleted

    async def touch_checked(self, pnr: str, checked_at: Optional[datetime] = None) -> None:
        """Refresh last_checked_at without any other change."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE tracked_records SET last_checked_at = ? WHERE pnr = ?",
                (_ts(checked_at or utcnow()), pnr),
            )
            await db.commit()

    async def mark_finalized(self, pnr: str) -> None:
        """Finalize a record outside a transition (archiving) and drop its job."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE tracked_records SET is_finalized = 1 WHERE pnr = ?", (pnr,))
            await db.execute("DELETE FROM scheduled_jobs WHERE pnr = ?", (pnr,))
            await db.commit()

    # History

    async def apply_transition(self, transition: Transition) -> HistoryEntry:
        """Append the history entry and update the record in one transaction."""
        snapshot = transition.snapshot
        entry = HistoryEntry(
            pnr=transition.pnr,
            previous_status=transition.old_status,
            new_status=transition.new_status,
            kind=transition.kind,
            category=transition.category,
            transitioned_at=snapshot.fetched_at,
        )
        finalized = transition.kind is TransitionKind.FINALIZED
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO status_history (pnr, previous_status, new_status, kind, category, transitioned_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.pnr,
                        entry.previous_status,
                        entry.new_status,
                        entry.kind.value,
                        entry.category.value if entry.category else None,
                        _ts(entry.transitioned_at),
                    ),
                )
                entry.id = cursor.lastrowid
                await db.execute(
                    """
                    UPDATE tracked_records SET
                        current_status = ?,
                        is_finalized = MAX(is_finalized, ?),
                        last_checked_at = ?,
                        origin = COALESCE(?, origin),
                        destination = COALESCE(?, destination),
                        travel_date = COALESCE(?, travel_date)
                    WHERE pnr = ?
                    """,
                    (
                        transition.new_status,
                        int(finalized),
                        _ts(snapshot.fetched_at),
                        snapshot.origin,
                        snapshot.destination,
                        snapshot.travel_date,
                        transition.pnr,
                    ),
                )
                if finalized:
                    await db.execute("DELETE FROM scheduled_jobs WHERE pnr = ?", (transition.pnr,))
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreWriteFailure(f"History append failed for PNR {transition.pnr}: {e}") from e
        return entry

    async def get_history(self, pnr: str, limit: int = 50, before_id: Optional[int] = None) -> list[HistoryEntry]:
        """History newest-first; pass the last id seen as `before_id` to page."""
        query = "SELECT * FROM status_history WHERE pnr = ?"
        params: list = [pnr]
        if before_id is not None:
            query += " AND id < ?"
            params.append(before_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            return [self._row_to_history(row) for row in await cursor.fetchall()]

    async def list_undispatched(self, channels: Sequence[str], since: datetime) -> list[HistoryEntry]:
        """History entries since `since` missing a finished attempt on any of `channels`, oldest first."""
        if not channels:
            return []
        placeholders = ", ".join("?" for _ in channels)
        query = f"""
            SELECT h.* FROM status_history h
            WHERE h.transitioned_at >= ?
              AND (
                SELECT COUNT(*) FROM notification_attempts a
                WHERE a.history_id = h.id AND a.outcome != ? AND a.channel IN ({placeholders})
              ) < ?
            ORDER BY h.id
        """
        params = [_ts(since), PENDING, *channels, len(channels)]
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            return [self._row_to_history(row) for row in await cursor.fetchall()]

    async def count_history(self, pnr: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM status_history WHERE pnr = ?", (pnr,))
            row = await cursor.fetchone()
            return row[0]

    async def purge_history(self, before: datetime) -> int:
        """Retention: delete history entries older than `before`."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM status_history WHERE transitioned_at < ?",
                (_ts(before),),
            )
            await db.commit()
            return cursor.rowcount

    # Scheduled jobs

    async def save_job(self, job: ScheduledJob) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO scheduled_jobs (pnr, interval, next_fire_at, consecutive_failures)
                VALUES (?, ?, ?, ?)
                """,
                (job.pnr, job.interval, job.next_fire_at, job.consecutive_failures),
            )
            await db.commit()

    async def delete_job(self, pnr: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM scheduled_jobs WHERE pnr = ?", (pnr,))
            await db.commit()
            return cursor.rowcount > 0

    async def get_job(self, pnr: str) -> Optional[ScheduledJob]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM scheduled_jobs WHERE pnr = ?", (pnr,))
            row = await cursor.fetchone()
            return ScheduledJob(**dict(row)) if row else None

    async def list_jobs(self) -> list[ScheduledJob]:
        """Persisted jobs of records that are still active."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT j.* FROM scheduled_jobs j
                JOIN tracked_records r ON r.pnr = j.pnr
                WHERE r.is_finalized = 0
                ORDER BY j.next_fire_at
                """
            )
            return [ScheduledJob(**dict(row)) for row in await cursor.fetchall()]

    # Notification attempts

    async def claim_attempt(self, history_id: int, pnr: str, channel: str) -> bool:
        """Reserve the single send for (history entry, channel). False if already claimed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO notification_attempts (history_id, channel, pnr, outcome, attempted_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (history_id, channel, pnr, PENDING, _ts(utcnow())),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def release_pending_claims(self, history_id: int) -> int:
        """Drop claims whose send never finished so they can be claimed again."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM notification_attempts WHERE history_id = ? AND outcome = ?",
                (history_id, PENDING),
            )
            await db.commit()
            return cursor.rowcount

    async def complete_attempt(self, attempt: NotificationAttempt) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE notification_attempts SET outcome = ?, attempted_at = ?, error = ?
                WHERE history_id = ? AND channel = ?
                """,
                (
                    attempt.outcome.value,
                    _ts(attempt.attempted_at),
                    attempt.error[:500] if attempt.error else None,
                    attempt.history_id,
                    attempt.channel,
                ),
            )
            await db.commit()

    async def list_attempts(self, pnr: Optional[str] = None, history_id: Optional[int] = None) -> list[NotificationAttempt]:
        query = "SELECT * FROM notification_attempts WHERE outcome != ?"
        params: list = [PENDING]
        if pnr is not None:
            query += " AND pnr = ?"
            params.append(pnr)
        if history_id is not None:
            query += " AND history_id = ?"
            params.append(history_id)
        query += " ORDER BY history_id, channel"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            return [
                NotificationAttempt(
                    pnr=row["pnr"],
                    history_id=row["history_id"],
                    channel=row["channel"],
                    outcome=ChannelOutcome(row["outcome"]),
                    attempted_at=_parse_ts(row["attempted_at"]),
                    error=row["error"],
                )
                for row in await cursor.fetchall()
            ]

    # In-app notifications

    async def add_in_app_notification(
        self,
        owner_id: str,
        pnr: str,
        title: str,
        content: str,
        category: Optional[ChangeCategory] = None,
    ) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO in_app_notifications (owner_id, pnr, category, title, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (owner_id, pnr, category.value if category else None, title, content, _ts(utcnow())),
            )
            await db.commit()
            return cursor.lastrowid

    async def list_in_app_notifications(self, owner_id: str, unread_only: bool = False) -> list[dict]:
        query = "SELECT * FROM in_app_notifications WHERE owner_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY id DESC"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, (owner_id,))
            return [dict(row) for row in await cursor.fetchall()]

    async def get_stats(self) -> dict:
        """Get counts for health/metrics output."""
        async with aiosqlite.connect(self.db_path) as db:
            stats = {}
            for name, query in (
                ("active_records", "SELECT COUNT(*) FROM tracked_records WHERE is_finalized = 0"),
                ("finalized_records", "SELECT COUNT(*) FROM tracked_records WHERE is_finalized = 1"),
                ("history_entries", "SELECT COUNT(*) FROM status_history"),
                ("scheduled_jobs", "SELECT COUNT(*) FROM scheduled_jobs"),
            ):
                cursor = await db.execute(query)
                stats[name] = (await cursor.fetchone())[0]
            cursor = await db.execute(
                "SELECT outcome, COUNT(*) FROM notification_attempts GROUP BY outcome"
            )
            stats["notifications"] = {row[0]: row[1] for row in await cursor.fetchall()}
            return stats

    def _row_to_history(self, row: aiosqlite.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            pnr=row["pnr"],
            previous_status=row["previous_status"],
            new_status=row["new_status"],
            kind=TransitionKind(row["kind"]),
            category=ChangeCategory(row["category"]) if row["category"] else None,
            transitioned_at=_parse_ts(row["transitioned_at"]),
        )

    def _row_to_record(self, row: aiosqlite.Row) -> TrackedRecord:
        return TrackedRecord(
            pnr=row["pnr"],
            owner_id=row["owner_id"],
            origin=row["origin"],
            destination=row["destination"],
            travel_date=row["travel_date"],
            current_status=row["current_status"],
            is_finalized=bool(row["is_finalized"]),
            last_checked_at=_parse_ts(row["last_checked_at"]),
            check_interval=row["check_interval"],
            notifications=NotificationSettings.model_validate_json(row["notifications"]),
            created_at=_parse_ts(row["created_at"]),
        )
