"""
Call board state and its reducer.

The board is one tenant's live view: active calls, per-agent status and
today's stats. It changes only through ``reduce(state, event)``, a pure
function over five tagged events:

* ``NewCall``          - a calls row appeared
* ``CallUpdated``      - an open row changed (status, duration, bridge status)
* ``CallEnded``        - a row closed or was deleted
* ``SnapshotReplaced`` - a full reload replaced everything
* ``DurationTick``     - the clock moved; refresh live durations

The reducer is idempotent for duplicate deliveries: a second ``NewCall``
for an active id patches it, and ids whose completion was already counted
(``settled_call_ids``) are ignored by both ``NewCall`` and ``CallEnded``.
An end for an id that is not on the board is remembered
(``ended_call_ids``) so a late ``NewCall`` for it cannot resurrect it.
``CallBoard`` wraps the state, journals events that arrive while a reload
is in flight and replays them over the new snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field

from callhelm.models import (
    ActiveCall,
    AgentState,
    AgentStatus,
    Call,
    CallDirection,
    CallStats,
    CallStatus,
    FAILURE_STATUSES,
)

log = structlog.get_logger(__name__)


def running_mean(old_mean: float, count: int, value: float) -> float:
    """Fold ``value`` into a mean over ``count`` samples; seeded with ``value`` when empty."""
    if count <= 0:
        return float(value)
    return (old_mean * count + value) / (count + 1)


# ── State ───────────────────────────────────────────────────────


class BoardState(BaseModel):
    active_calls: list[ActiveCall] = Field(default_factory=list)
    agents: list[AgentStatus] = Field(default_factory=list)
    stats: CallStats = Field(default_factory=CallStats)
    # Ids whose completion is already folded into stats
    settled_call_ids: set[str] = Field(default_factory=set)
    # Ids that ended before the board ever showed them open
    ended_call_ids: set[str] = Field(default_factory=set)
    loaded_at: Optional[datetime] = None

    def find_call(self, call_id: str) -> Optional[ActiveCall]:
        return next((c for c in self.active_calls if c.id == call_id), None)

    def find_agent(self, agent_id: Optional[str]) -> Optional[AgentStatus]:
        if not agent_id:
            return None
        return next((a for a in self.agents if a.id == agent_id), None)

    def is_active(self, call_id: str) -> bool:
        return self.find_call(call_id) is not None


# ── Events ──────────────────────────────────────────────────────


class NewCall(BaseModel):
    kind: Literal["new_call"] = "new_call"
    call: Call
    agent_name: str = "Unknown"
    contact_name: str = "Unknown"


class CallUpdated(BaseModel):
    kind: Literal["call_updated"] = "call_updated"
    call: Call
    agent_name: str = "Unknown"
    contact_name: str = "Unknown"


class CallEnded(BaseModel):
    kind: Literal["call_ended"] = "call_ended"
    call_id: str
    status: CallStatus = CallStatus.COMPLETED
    member_id: Optional[str] = None
    duration: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_call(cls, call: Call) -> "CallEnded":
        return cls(
            call_id=call.id,
            status=call.status,
            member_id=call.member_id,
            duration=call.duration,
            start_time=call.start_time,
            end_time=call.end_time,
        )


class SnapshotReplaced(BaseModel):
    kind: Literal["snapshot_replaced"] = "snapshot_replaced"
    state: BoardState


class DurationTick(BaseModel):
    kind: Literal["duration_tick"] = "duration_tick"
    now: datetime


BoardEvent = Union[NewCall, CallUpdated, CallEnded, SnapshotReplaced, DurationTick]


# ── Reducer ─────────────────────────────────────────────────────


def to_active_call(call: Call, agent_name: str = "Unknown", contact_name: str = "Unknown") -> ActiveCall:
    phone = call.caller_number if call.direction == CallDirection.INBOUND else call.called_number
    return ActiveCall(
        id=call.id,
        agent_id=call.member_id,
        agent_name=agent_name,
        contact_id=call.contact_id,
        contact_name=contact_name,
        phone_number=phone,
        direction=call.direction,
        status=call.status,
        bridge_status=call.bridge_status,
        call_list_id=call.call_list_id,
        start_time=call.start_time,
        duration_seconds=call.duration or 0,
    )


def reduce(state: BoardState, event: BoardEvent) -> BoardState:
    """Return the state after ``event``; ``state`` itself is left untouched."""
    if isinstance(event, SnapshotReplaced):
        return event.state.model_copy(deep=True)

    new = state.model_copy(deep=True)
    if isinstance(event, NewCall):
        _apply_new_call(new, event.call, event.agent_name, event.contact_name)
    elif isinstance(event, CallUpdated):
        _apply_call_updated(new, event)
    elif isinstance(event, CallEnded):
        _apply_call_ended(new, event)
    elif isinstance(event, DurationTick):
        for active in new.active_calls:
            active.duration_seconds = max(0, int((event.now - active.start_time).total_seconds()))
    new.stats.active_calls = len(new.active_calls)
    return new


def _patch(active: ActiveCall, call: Call) -> None:
    active.status = call.status
    if call.bridge_status is not None:
        active.bridge_status = call.bridge_status
    if call.duration is not None:
        active.duration_seconds = call.duration


def _apply_new_call(state: BoardState, call: Call, agent_name: str, contact_name: str) -> None:
    if call.id in state.settled_call_ids:
        return
    if call.is_open and call.id in state.ended_call_ids:
        log.debug("late_open_call_ignored", call_id=call.id)
        return

    existing = state.find_call(call.id)
    if not call.is_open:
        if existing is not None:
            _apply_call_ended(state, CallEnded.from_call(call))
            return
        # Inserted already closed: counted, never shown as active
        state.stats.total_calls += 1
        agent = state.find_agent(call.member_id)
        if agent is not None:
            agent.calls_today += 1
        _fold_completion(state, call.id, call.member_id, call.status, call.effective_duration(), call.end_time)
        return

    if existing is not None:
        _patch(existing, call)
        return

    state.active_calls.append(to_active_call(call, agent_name, contact_name))
    state.stats.total_calls += 1
    agent = state.find_agent(call.member_id)
    if agent is not None:
        agent.status = AgentState.BUSY
        agent.current_call_id = call.id
        agent.calls_today += 1
        agent.last_activity = call.start_time


def _apply_call_updated(state: BoardState, event: CallUpdated) -> None:
    call = event.call
    existing = state.find_call(call.id)
    if existing is not None:
        _patch(existing, call)
        return
    # An update for a row we never saw inserted
    _apply_new_call(state, call, event.agent_name, event.contact_name)


def _apply_call_ended(state: BoardState, event: CallEnded) -> None:
    if event.call_id in state.settled_call_ids:
        return
    index = next((i for i, c in enumerate(state.active_calls) if c.id == event.call_id), None)
    if index is None:
        state.ended_call_ids.add(event.call_id)
        return
    entry = state.active_calls.pop(index)

    if event.duration is not None:
        duration = event.duration
    elif event.end_time is not None:
        start = event.start_time or entry.start_time
        duration = max(0, int((event.end_time - start).total_seconds()))
    else:
        duration = entry.duration_seconds

    _fold_completion(
        state,
        entry.id,
        entry.agent_id or event.member_id,
        event.status,
        duration,
        event.end_time,
    )


def _fold_completion(
    state: BoardState,
    call_id: str,
    agent_id: Optional[str],
    status: CallStatus,
    duration: int,
    ended_at: Optional[datetime],
) -> None:
    stats = state.stats
    stats.completed_calls += 1
    if status in FAILURE_STATUSES:
        stats.failed_calls += 1
    stats.total_duration += duration
    stats.avg_duration = stats.total_duration / stats.completed_calls if stats.completed_calls else 0.0
    state.settled_call_ids.add(call_id)

    agent = state.find_agent(agent_id)
    if agent is None:
        return
    agent.avg_call_time = running_mean(agent.avg_call_time, agent.completed_calls, duration)
    agent.completed_calls += 1
    if ended_at is not None and (agent.last_activity is None or ended_at > agent.last_activity):
        agent.last_activity = ended_at

    still_on_call = next((c for c in state.active_calls if c.agent_id == agent.id), None)
    if still_on_call is not None:
        agent.status = AgentState.BUSY
        agent.current_call_id = still_on_call.id
    else:
        agent.status = AgentState.AFTER_CALL
        agent.current_call_id = None


# ── Board container ─────────────────────────────────────────────


class CallBoard:
    """
    Mutable holder for one tenant's ``BoardState``.

    ``dispatch`` is synchronous, so on a single event loop each event is
    applied atomically. Between ``begin_reload`` and ``complete_reload``
    every dispatched call event is journalled; the new snapshot is applied
    first and the journal replayed on top of it, so nothing seen during the
    reload is lost to the older data.
    """

    def __init__(self, organization_id: str, state: Optional[BoardState] = None):
        self.organization_id = organization_id
        self.state = state or BoardState()
        self._reloading = False
        self._journal: list[BoardEvent] = []

    @property
    def reloading(self) -> bool:
        return self._reloading

    def dispatch(self, event: BoardEvent) -> BoardState:
        if self._reloading and isinstance(event, (NewCall, CallUpdated, CallEnded)):
            self._journal.append(event)
        self.state = reduce(self.state, event)
        return self.state

    def begin_reload(self) -> None:
        self._reloading = True
        self._journal = []

    def complete_reload(self, snapshot: BoardState) -> BoardState:
        journal, self._journal = self._journal, []
        self._reloading = False
        self.state = reduce(self.state, SnapshotReplaced(state=snapshot))
        for event in journal:
            self.state = reduce(self.state, event)
        if journal:
            log.info("board_journal_replayed", organization_id=self.organization_id, events=len(journal))
        return self.state

    def abort_reload(self) -> None:
        self._reloading = False
        self._journal = []
