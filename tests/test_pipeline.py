"""Tests for the fetch -> detect -> dispatch pipeline."""
import asyncio

import pytest

from conftest import BrokenCacheBackend, FakeChannel, FakeUpstream, PNR, build_service, make_record
from pnr_tracker.errors import InvalidRecordId, StoreWriteFailure, UnknownRecord, UpstreamPermanent, UpstreamTransient
from pnr_tracker.models import ChannelOutcome, JobState, StatusSnapshot, TransitionKind


def test_unchanged_status_only_touches_last_checked(service, upstream, channels):
    """Test a repeated status: no history, no notification, last-checked refreshed."""
    upstream.script(PNR, "CNF/S1/25")

    async def scenario():
        await service.initialize()
        await service.store.upsert_record(make_record(current_status="CNF/S1/25"))
        outcome = await service.check_now(PNR)
        return outcome, await service.store.get_record(PNR), await service.store.count_history(PNR)

    outcome, record, history = asyncio.run(scenario())
    assert outcome.ok
    assert outcome.transition.kind is TransitionKind.UNCHANGED
    assert history == 0
    assert record.last_checked_at is not None
    assert all(channel.sent == [] for channel in channels)


def test_first_status_recorded_and_notified(service, upstream, channels):
    """Test a first status: one history entry and every channel notified."""
    upstream.script(PNR, "WL/12")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        outcome = await service.check_now(PNR)
        history = await service.get_history(PNR)
        return outcome, history

    outcome, history = asyncio.run(scenario())
    assert outcome.transition.kind is TransitionKind.FIRST_SEEN
    assert outcome.history_id == history[0].id
    assert len(history) == 1
    assert history[0].new_status == "WL/12"
    assert {attempt.channel for attempt in outcome.notifications} == {"email", "push"}
    assert all(attempt.outcome is ChannelOutcome.DELIVERED for attempt in outcome.notifications)
    assert all(len(channel.sent) == 1 for channel in channels)


def test_repeated_identical_statuses_make_one_history_entry(service, upstream):
    """Test checking the same status many times records it once."""
    upstream.script(PNR, "WL/12")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        for _ in range(3):
            await service.cache.invalidate(PNR)
            await service.check_now(PNR)
        return await service.store.count_history(PNR)

    assert asyncio.run(scenario()) == 1
    assert len(upstream.calls) == 3


def test_status_change_recorded_as_update(service, upstream):
    """Test a later different status becomes an UPDATED entry."""
    upstream.script(PNR, "WL/12", "CNF/B2/40")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        await service.check_now(PNR)
        await service.cache.invalidate(PNR)
        outcome = await service.check_now(PNR)
        return outcome, await service.get_history(PNR)

    outcome, history = asyncio.run(scenario())
    assert outcome.transition.kind is TransitionKind.UPDATED
    assert outcome.transition.old_status == "WL/12"
    assert [entry.new_status for entry in history] == ["CNF/B2/40", "WL/12"]


def test_transient_failures_then_success(service, upstream):
    """Test retries inside one check end in a successful outcome."""
    upstream.script(PNR, UpstreamTransient("timeout"), UpstreamTransient("timeout"), "CNF/S1/25")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        return await service.check_now(PNR)

    outcome = asyncio.run(scenario())
    assert outcome.ok
    assert outcome.transition.snapshot.attempts == 3
    assert len(upstream.calls) == 3


def test_exhausted_transient_failures_fail_the_check(service, upstream, channels):
    """Test a check fails without history when the upstream stays down."""
    upstream.script(PNR, UpstreamTransient("timeout"))

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        outcome = await service.check_now(PNR)
        return outcome, await service.store.count_history(PNR)

    outcome, history = asyncio.run(scenario())
    assert not outcome.ok
    assert outcome.error_kind == "upstream_transient"
    assert history == 0
    assert all(channel.sent == [] for channel in channels)


def test_finalized_upstream_finalizes_record(service, upstream):
    """Test a finalized status removes the job and blocks rescheduling."""
    upstream.script(PNR, StatusSnapshot(pnr=PNR, status="JOURNEY COMPLETED", finalized=True))

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        assert service.scheduler.get_job(PNR) is not None
        outcome = await service.check_now(PNR)
        record = await service.store.get_record(PNR)
        persisted_job = await service.store.get_job(PNR)
        rescheduled = await service.scheduler.schedule_status_check(PNR)
        return outcome, record, persisted_job, rescheduled

    outcome, record, persisted_job, rescheduled = asyncio.run(scenario())
    assert outcome.finalized
    assert record.is_finalized
    assert persisted_job is None
    assert service.scheduler.get_job(PNR) is None
    assert service.scheduler.state(PNR) is JobState.FINALIZED
    assert rescheduled is None


def test_permanent_failure_finalizes_as_expired(service, upstream, channels):
    """Test a flushed PNR becomes an EXPIRED final status and is notified."""
    upstream.script(PNR, UpstreamPermanent("not found", status="EXPIRED"))

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        await service.check_now(PNR)
        await service.cache.invalidate(PNR)
        again = await service.check_now(PNR)
        return again, await service.store.get_record(PNR)

    again, record = asyncio.run(scenario())
    assert record.is_finalized
    assert record.current_status == "EXPIRED"
    assert again.skipped_reason == "finalized"
    assert len(upstream.calls) == 1
    assert all(len(channel.sent) == 1 for channel in channels)


def test_reregistering_reactivates_finalized_record(service, upstream):
    """Test a finalized record can be scheduled again after re-registration."""
    upstream.script(PNR, StatusSnapshot(pnr=PNR, status="CAN", finalized=True))

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        await service.check_now(PNR)
        record = await service.register_tracking(make_record(check_interval=120))
        return record, service.scheduler.get_job(PNR), await service.store.count_history(PNR)

    record, job, history = asyncio.run(scenario())
    assert not record.is_finalized
    assert record.current_status == "CAN"
    assert job is not None and job.interval == 120
    assert history == 1


def test_cache_failure_does_not_fail_check(tmp_path):
    """Test checks succeed with the cache backend down."""
    upstream = FakeUpstream(default="WL/2")
    service = build_service(tmp_path, upstream=upstream, cache_backend=BrokenCacheBackend())

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        return await service.check_now(PNR)

    outcome = asyncio.run(scenario())
    assert outcome.ok
    assert outcome.transition.kind is TransitionKind.FIRST_SEEN
    assert service.events.count("cache_error") >= 2


def test_history_write_failure_sends_nothing(service, upstream, channels):
    """Test a failed history append fails the check without notifications."""

    async def failing_apply(transition):
        raise StoreWriteFailure("disk full")

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        service.store.apply_transition = failing_apply
        outcome = await service.check_now(PNR)
        record = await service.store.get_record(PNR)
        return outcome, record

    outcome, record = asyncio.run(scenario())
    assert not outcome.ok
    assert outcome.error_kind == "store_write_failure"
    assert record.current_status is None
    assert all(channel.sent == [] for channel in channels)


def test_concurrent_checks_share_one_outcome(service, upstream, channels):
    """Test overlapping checks of one PNR make one fetch, entry and notification set."""

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        upstream.gate = asyncio.Event()
        first = asyncio.create_task(service.check_now(PNR))
        second = asyncio.create_task(service.checker.check(PNR))
        await asyncio.sleep(0.05)
        upstream.gate.set()
        outcomes = await asyncio.gather(first, second)
        return outcomes, await service.store.count_history(PNR)

    outcomes, history = asyncio.run(scenario())
    assert len(upstream.calls) == 1
    assert history == 1
    assert sorted(outcome.coalesced for outcome in outcomes) == [False, True]
    assert outcomes[0].history_id == outcomes[1].history_id
    assert all(len(channel.sent) == 1 for channel in channels)


def test_check_now_rejects_unknown_and_malformed(service):
    """Test only bad ids raise from check_now."""

    async def scenario():
        await service.initialize()
        with pytest.raises(UnknownRecord):
            await service.check_now(PNR)
        with pytest.raises(InvalidRecordId):
            await service.check_now("12AB")

    asyncio.run(scenario())


def test_one_channel_failing_keeps_check_ok(tmp_path):
    """Test a failing channel does not fail the check."""
    channels = [FakeChannel("email", fail=True), FakeChannel("push")]
    service = build_service(tmp_path, channels=channels)

    async def scenario():
        await service.initialize()
        await service.register_tracking(make_record())
        return await service.check_now(PNR)

    outcome = asyncio.run(scenario())
    assert outcome.ok
    outcomes = {attempt.channel: attempt.outcome for attempt in outcome.notifications}
    assert outcomes == {"email": ChannelOutcome.FAILED, "push": ChannelOutcome.DELIVERED}
