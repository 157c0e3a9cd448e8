"""Tests for journey archiving and history retention."""
import asyncio
from datetime import date, timedelta

import pytest

from conftest import PNR, make_record
from pnr_tracker.detect.detector import ChangeDetector
from pnr_tracker.jobs.archiver import RecordArchiver, is_journey_completed, parse_travel_date
from pnr_tracker.models import ScheduledJob, StatusSnapshot, utcnow
from pnr_tracker.store.state import StateDB

TODAY = date(2024, 1, 10)


@pytest.mark.parametrize(
    "value",
    ["01-01-2024", "01/01/2024", "01.01.2024", "1 Jan 2024", "01 January 2024", "2024-01-01"],
)
def test_parse_travel_date_formats(value):
    """Test supported travel date formats."""
    assert parse_travel_date(value) == date(2024, 1, 1)


@pytest.mark.parametrize("value", [None, "", "   ", "31-02-2024", "tomorrow", "2024/13/01"])
def test_parse_travel_date_invalid(value):
    """Test unparseable dates give None."""
    assert parse_travel_date(value) is None


def test_is_journey_completed():
    """Test completion keywords; chart prepared is not completion."""
    assert is_journey_completed("JOURNEY COMPLETED")
    assert is_journey_completed("Travelled")
    assert not is_journey_completed("CHART PREPARED")
    assert not is_journey_completed(None)


def test_sweep_finalizes_past_journeys(tmp_path):
    """Test records past the grace period or completed are archived."""
    store = StateDB(tmp_path / "state.db")
    archiver = RecordArchiver(store, days_after_travel=7, retention_days=0, today=lambda: TODAY)
    archived_calls = []
    archiver.add_archived_listener(archived_calls.append)

    records = {
        "1000000001": make_record("1000000001", travel_date="01-01-2024"),
        "1000000002": make_record("1000000002", travel_date="09-01-2024"),
        "1000000003": make_record("1000000003", travel_date="not a date"),
        "1000000004": make_record("1000000004", current_status="JOURNEY COMPLETED"),
        "1000000005": make_record("1000000005", travel_date="01-01-2024", is_finalized=True),
    }

    async def scenario():
        await store.initialize()
        for record in records.values():
            await store.upsert_record(record)
            await store.save_job(ScheduledJob(pnr=record.pnr, interval=60, next_fire_at=0))
        stats = await archiver.sweep()
        finalized = {pnr: (await store.get_record(pnr)).is_finalized for pnr in records}
        jobs = {pnr: await store.get_job(pnr) for pnr in records}
        return stats, finalized, jobs

    stats, finalized, jobs = asyncio.run(scenario())
    assert sorted(stats.archived) == ["1000000001", "1000000004"]
    assert stats.total_processed == 4
    assert sorted(archived_calls) == ["1000000001", "1000000004"]
    assert finalized == {
        "1000000001": True,
        "1000000002": False,
        "1000000003": False,
        "1000000004": True,
        "1000000005": True,
    }
    assert jobs["1000000001"] is None and jobs["1000000004"] is None
    assert jobs["1000000002"] is not None


def test_purge_history_respects_retention(tmp_path):
    """Test only entries older than the retention window are removed."""
    store = StateDB(tmp_path / "state.db")
    archiver = RecordArchiver(store, retention_days=30)
    detector = ChangeDetector()

    async def scenario():
        await store.initialize()
        await store.upsert_record(make_record())
        old = StatusSnapshot(pnr=PNR, status="WL/12", fetched_at=utcnow() - timedelta(days=40))
        await store.apply_transition(detector.detect(None, old))
        recent = StatusSnapshot(pnr=PNR, status="WL/5")
        await store.apply_transition(detector.detect("WL/12", recent))
        purged = await archiver.purge_history()
        return purged, await store.get_history(PNR)

    purged, history = asyncio.run(scenario())
    assert purged == 1
    assert [entry.new_status for entry in history] == ["WL/5"]


def test_purge_disabled_by_default(tmp_path):
    """Test zero retention keeps everything."""
    archiver = RecordArchiver(StateDB(tmp_path / "state.db"), retention_days=0)
    assert asyncio.run(archiver.purge_history()) == 0
