"""Tests for the batch board projection and its agreement with the reducer."""

from datetime import datetime, timedelta, timezone

import pytest

from callhelm.board import CallBoard, CallEnded, NewCall, reduce
from callhelm.models import AgentState, Call, CallStatus
from callhelm.projector import load_board_snapshot, project_board, start_of_day

NOW = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)
MEMBERS = [
    {"id": "a1", "full_name": "Alice", "email": "alice@example.com", "presence": None},
    {"id": "a2", "full_name": "Bob", "email": "bob@example.com", "presence": "break"},
]


def _call(call_id, member_id="a1", start_offset=600, seconds=None, status=CallStatus.ANSWERED):
    start = NOW - timedelta(seconds=start_offset)
    end = start + timedelta(seconds=seconds) if seconds is not None else None
    return Call(
        id=call_id,
        organization_id="o1",
        member_id=member_id,
        contact_id="k1",
        called_number="+14155551234",
        status=status,
        start_time=start,
        end_time=end,
    )


def _project(calls, now=NOW):
    open_calls = [c for c in calls if c.is_open]
    return project_board(open_calls, calls, MEMBERS, {"k1": "Kim"}, now)


def test_start_of_day_in_timezone():
    midnight = start_of_day(NOW, "America/New_York")
    assert midnight.isoformat() == "2026-03-01T00:00:00-05:00"
    assert start_of_day(NOW).isoformat() == "2026-03-01T00:00:00+00:00"


def test_projection_counts():
    calls = [
        _call("c1", seconds=60, status=CallStatus.COMPLETED),
        _call("c2", seconds=120, status=CallStatus.FAILED),
        _call("c3", start_offset=30),
    ]
    state = _project(calls)

    assert state.stats.total_calls == 3
    assert state.stats.active_calls == 1
    assert state.stats.completed_calls == 2
    assert state.stats.failed_calls == 1
    assert state.stats.avg_duration == 90
    assert state.settled_call_ids == {"c1", "c2"}

    active = state.active_calls[0]
    assert active.id == "c3"
    assert active.agent_name == "Alice"
    assert active.contact_name == "Kim"
    assert active.duration_seconds == 30

    alice = state.find_agent("a1")
    assert alice.status == AgentState.BUSY
    assert alice.current_call_id == "c3"
    assert alice.calls_today == 3
    assert alice.completed_calls == 2
    assert alice.avg_call_time == 90


def test_idle_agents_use_presence():
    state = _project([])
    assert state.find_agent("a1").status == AgentState.AVAILABLE
    assert state.find_agent("a2").status == AgentState.BREAK
    assert state.stats.avg_duration == 0.0


def test_projection_is_deterministic():
    calls = [_call("c1", seconds=60), _call("c2", start_offset=5)]
    assert _project(calls) == _project(list(calls))


def test_incremental_matches_batch():
    """Folding the same rows one event at a time lands on the batch projection."""
    c1, c2, c3 = _call("c1"), _call("c2", member_id="a2"), _call("c3", start_offset=100)
    ended = [
        _call("c1", seconds=45, status=CallStatus.COMPLETED),
        _call("c2", member_id="a2", seconds=300, status=CallStatus.ABANDONED),
    ]

    state = _project([])
    for c in (c1, c2, c3):
        state = reduce(state, NewCall(call=c))
    for c in ended:
        state = reduce(state, CallEnded.from_call(c))

    batch = _project(ended + [c3])
    assert state.stats.total_calls == batch.stats.total_calls
    assert state.stats.completed_calls == batch.stats.completed_calls
    assert state.stats.failed_calls == batch.stats.failed_calls
    assert state.stats.avg_duration == pytest.approx(batch.stats.avg_duration)
    assert [c.id for c in state.active_calls] == [c.id for c in batch.active_calls]
    for agent_id in ("a1", "a2"):
        inc, bat = state.find_agent(agent_id), batch.find_agent(agent_id)
        assert inc.calls_today == bat.calls_today
        assert inc.completed_calls == bat.completed_calls
        assert inc.avg_call_time == pytest.approx(bat.avg_call_time)


@pytest.mark.asyncio
async def test_load_snapshot_from_store(db, tenant, call_factory):
    org = tenant["organization_id"]
    contact = await db.add_contact(org, "Kim Contact")
    now = datetime.now(timezone.utc)
    await db.insert_call(call_factory(org, member_id=tenant["member_id"], contact_id=contact))
    await db.insert_call(
        call_factory(org, member_id=tenant["member_id"], end_time=now, status=CallStatus.COMPLETED, duration=33)
    )

    state = await load_board_snapshot(db, org, now=now + timedelta(seconds=1))
    assert state.stats.total_calls == 2
    assert state.stats.completed_calls == 1
    assert state.stats.total_duration == 33
    assert state.active_calls[0].contact_name == "Kim Contact"
    assert state.active_calls[0].agent_name == "Alice Agent"
    assert state.find_agent(tenant["member_id"]).status == AgentState.BUSY


@pytest.mark.asyncio
async def test_reload_is_idempotent(db, tenant, call_factory):
    org = tenant["organization_id"]
    await db.insert_call(call_factory(org, member_id=tenant["member_id"]))
    now = datetime.now(timezone.utc)

    board = CallBoard(org)
    first = board.complete_reload(await load_board_snapshot(db, org, now=now))
    second = board.complete_reload(await load_board_snapshot(db, org, now=now))
    assert first == second
