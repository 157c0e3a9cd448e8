"""Tests for the service facade, events export and CLI parsing."""
import asyncio

import orjson
import pytest

from conftest import PNR, make_record
from pnr_tracker.errors import UnknownRecord
from pnr_tracker.jobs.events import EventRecorder
from pnr_tracker.main import parse_args


def test_remove_tracking_deletes_record_and_history(service):
    """Test removal drops the record, its history and its job."""

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        await service.check_now(PNR)
        removed = await service.remove_tracking(PNR)
        return removed, await service.store.get_record(PNR), await service.store.count_history(PNR)

    removed, record, history = asyncio.run(scenario())
    assert removed
    assert record is None
    assert history == 0
    assert service.scheduler.get_job(PNR) is None


def test_history_pages_newest_first(service, upstream):
    """Test history can be read in pages with before_id."""
    upstream.script(PNR, "WL/12", "WL/8", "WL/3", "CNF/B1/10")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        for _ in range(4):
            await service.cache.invalidate(PNR)
            await service.check_now(PNR)
        first_page = await service.get_history(PNR, limit=2)
        second_page = await service.get_history(PNR, limit=2, before_id=first_page[-1].id)
        return first_page, second_page

    first_page, second_page = asyncio.run(scenario())
    assert [entry.new_status for entry in first_page] == ["CNF/B1/10", "WL/3"]
    assert [entry.new_status for entry in second_page] == ["WL/8", "WL/12"]


def test_cached_status(service):
    """Test the cached status is served after a check."""

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        before = await service.get_cached_status(PNR)
        await service.check_now(PNR)
        return before, await service.get_cached_status(PNR)

    assert asyncio.run(scenario()) == (None, "WL/12")


def test_get_history_unknown_record(service):
    """Test history of an untracked PNR raises."""

    async def scenario():
        await service.initialize()
        await service.get_history(PNR)

    with pytest.raises(UnknownRecord):
        asyncio.run(scenario())


def test_stats_include_counters(service):
    """Test stats combine store counts and event counters."""

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        await service.check_now(PNR)
        return await service.get_stats()

    stats = asyncio.run(scenario())
    assert stats["active_records"] == 1
    assert stats["history_entries"] == 1
    assert stats["notifications"] == {"delivered": 2}
    assert stats["upstream"]["calls"] == 1
    assert stats["metrics"]["counters"]["check_completed"] == 1


def test_events_export_appends_jsonl(tmp_path):
    """Test counters snapshots are appended as JSON lines."""
    path = tmp_path / "events.jsonl"
    events = EventRecorder(export_path=path)
    events.emit("cache_miss", pnr=PNR)
    events.emit("notification_outcome", pnr=PNR, channel="email", outcome="failed")

    async def scenario():
        await events.export()
        await events.export()

    asyncio.run(scenario())
    lines = path.read_bytes().splitlines()
    assert len(lines) == 2
    counters = orjson.loads(lines[-1])["counters"]
    assert counters["cache_miss"] == 1
    assert counters["notification_failed"] == 1
    assert len(events.events("notification_outcome")) == 1


def test_parse_args():
    """Test CLI subcommands."""
    args = parse_args(["check-all", PNR, "2345678901", "--concurrency", "2"])
    assert args.command == "check-all"
    assert args.pnrs == [PNR, "2345678901"]
    assert args.concurrency == 2

    args = parse_args(["track", PNR, "--owner", "user-1", "--email", "owner@example.com"])
    assert args.owner == "user-1"
    assert args.interval is None

    with pytest.raises(SystemExit):
        parse_args([])
