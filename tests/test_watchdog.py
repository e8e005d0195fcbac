"""Tests for the staleness watchdog, duration ticker and board sessions."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from callhelm.board import BoardState, CallBoard, NewCall, SnapshotReplaced
from callhelm.dashboard import CallBoardRegistry, CallBoardSession
from callhelm.models import Call, CallStats, utcnow
from callhelm.realtime import ChannelStatus
from callhelm.watchdog import DurationTicker, PeriodicTask, StalenessWatchdog

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeChannel:
    def __init__(self):
        self.healthy = True
        self.last_event_at = None
        self.reconciles = 0

    async def reconcile(self):
        self.reconciles += 1


def _watchdog(channel, clock, threshold=30):
    return StalenessWatchdog(
        is_healthy=lambda: channel.healthy,
        last_activity=lambda: channel.last_event_at,
        reconcile=channel.reconcile,
        threshold_seconds=threshold,
        clock=clock,
    )


class TestStalenessWatchdog:
    def test_never_synced(self):
        channel, clock = FakeChannel(), FakeClock()
        assert _watchdog(channel, clock).reason() == "never_synced"

    def test_unhealthy_channel(self):
        channel, clock = FakeChannel(), FakeClock()
        channel.healthy = False
        dog = _watchdog(channel, clock)
        dog.mark_reconciled()
        assert dog.reason() == "channel_unhealthy"

    def test_fresh_then_stale(self):
        channel, clock = FakeChannel(), FakeClock()
        dog = _watchdog(channel, clock)
        dog.mark_reconciled()
        clock.advance(10)
        assert dog.reason() is None
        clock.advance(25)
        assert dog.reason() == "stale"

    def test_recent_event_keeps_board_fresh(self):
        channel, clock = FakeChannel(), FakeClock()
        dog = _watchdog(channel, clock)
        dog.mark_reconciled()
        clock.advance(25)
        channel.last_event_at = clock()
        clock.advance(25)
        assert dog.reason() is None

    def test_day_rollover_forces_reconcile(self):
        channel, clock = FakeChannel(), FakeClock(T0.replace(hour=23, minute=59))
        dog = StalenessWatchdog(
            is_healthy=lambda: channel.healthy,
            last_activity=lambda: channel.last_event_at,
            reconcile=channel.reconcile,
            covers=lambda now: now.date() == T0.date(),
            clock=clock,
        )
        dog.mark_reconciled()
        clock.advance(20)
        channel.last_event_at = clock()
        assert dog.reason() is None

        clock.advance(60)
        channel.last_event_at = clock()
        assert dog.reason() == "day_rolled_over"

    @pytest.mark.asyncio
    async def test_check_reconciles_when_stale(self):
        channel, clock = FakeChannel(), FakeClock()
        dog = _watchdog(channel, clock)
        dog.mark_reconciled()
        assert await dog.check() is False

        clock.advance(31)
        assert await dog.check() is True
        assert channel.reconciles == 1
        assert dog.reconcile_count == 1
        assert dog.last_reconciled_at == clock()
        assert await dog.check() is False

    @pytest.mark.asyncio
    async def test_unhealthy_reconciles_every_check(self):
        channel, clock = FakeChannel(), FakeClock()
        channel.healthy = False
        dog = _watchdog(channel, clock)
        await dog.check()
        await dog.check()
        assert channel.reconciles == 2


@pytest.mark.asyncio
async def test_periodic_task_survives_failures():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = PeriodicTask("flaky", 0.01, flaky)
    task.start()
    assert task.running
    await asyncio.sleep(0.1)
    await task.stop()
    assert not task.running
    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_duration_ticker():
    board = CallBoard("o1")
    board.dispatch(NewCall(call=Call(id="c1", organization_id="o1", start_time=T0)))
    clock = FakeClock(T0 + timedelta(seconds=12))

    await DurationTicker(board, clock=clock).tick()
    assert board.state.active_calls[0].duration_seconds == 12


# ── Sessions ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_session_start_and_snapshot(db, tenant, settings, call_factory):
    org = tenant["organization_id"]
    await db.insert_call(call_factory(org, member_id=tenant["member_id"]))

    session = CallBoardSession(db, org, settings)
    await session.start()
    try:
        assert session.watchdog.running
        assert session.ticker.running
        snap = session.snapshot()
        assert snap["organizationId"] == org
        assert snap["channelStatus"] == "SUBSCRIBED"
        assert len(snap["activeCalls"]) == 1
        assert snap["stats"]["active_calls"] == 1
        assert snap["loadedAt"] is not None

        # Live update through the feed
        await db.insert_call(call_factory(org, member_id=tenant["member_id"]))
        assert len(session.snapshot()["activeCalls"]) == 2
        assert session.snapshot()["lastEventAt"] is not None
    finally:
        await session.stop()
    assert not session.watchdog.running


@pytest.mark.asyncio
async def test_session_reload_recovers_missed_events(db, tenant, settings, call_factory):
    org = tenant["organization_id"]
    session = CallBoardSession(db, org, settings)
    await session.start()
    try:
        session.listener.subscription.set_status(ChannelStatus.CHANNEL_ERROR)
        await db.insert_call(call_factory(org))
        assert session.board.state.active_calls == []

        await session.reload()
        assert len(session.board.state.active_calls) == 1
    finally:
        await session.stop()


@pytest.mark.asyncio
async def test_reload_failure_leaves_board_usable(db, tenant, settings, monkeypatch):
    session = CallBoardSession(db, tenant["organization_id"], settings)
    await session.start()
    try:
        async def broken(*args, **kwargs):
            raise RuntimeError("db gone")

        monkeypatch.setattr(db, "list_open_calls", broken)
        with pytest.raises(RuntimeError):
            await session.reload()
        assert not session.board.reloading
    finally:
        await session.stop()


@pytest.mark.asyncio
async def test_registry_reuses_sessions(db, tenant, settings):
    registry = CallBoardRegistry(db, settings)
    first = await registry.get(tenant["organization_id"])
    second = await registry.get(tenant["organization_id"])
    assert first is second
    assert registry.peek(tenant["organization_id"]) is first
    await registry.stop_all()
    assert registry.peek(tenant["organization_id"]) is None
    assert not first.started


@pytest.mark.asyncio
async def test_covers_day_uses_board_timezone(db, settings):
    session = CallBoardSession(db, "o1", settings.model_copy(update={"board_timezone": "America/New_York"}))
    # 23:59 in New York
    loaded = datetime(2026, 3, 2, 4, 59, tzinfo=timezone.utc)
    session.board.dispatch(SnapshotReplaced(state=BoardState(loaded_at=loaded)))

    assert session.covers_day(loaded + timedelta(seconds=30))
    assert not session.covers_day(loaded + timedelta(minutes=2))


@pytest.mark.asyncio
async def test_midnight_rollover_resets_today_stats(db, tenant, settings, call_factory):
    org = tenant["organization_id"]
    session = CallBoardSession(db, org, settings)
    await session.start()
    try:
        yesterday = BoardState(
            stats=CallStats(total_calls=5, completed_calls=5, total_duration=300, avg_duration=60.0),
            loaded_at=utcnow() - timedelta(days=1),
        )
        session.board.dispatch(SnapshotReplaced(state=yesterday))

        # Steady traffic keeps the channel fresh, yet the day has changed
        await db.insert_call(call_factory(org, member_id=tenant["member_id"]))
        assert session.board.state.stats.total_calls == 6
        assert session.watchdog.reason() == "day_rolled_over"

        assert await session.watchdog.check() is True
        stats = session.board.state.stats
        assert (stats.total_calls, stats.completed_calls, stats.active_calls) == (1, 0, 1)
        assert session.watchdog.reason() is None
    finally:
        await session.stop()
