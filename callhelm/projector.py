"""
Batch projection of the call board from authoritative rows.

``project_board`` is a pure function of its inputs; given the same rows and
the same ``now`` it always yields the same ``BoardState``. Its counters use
the same definitions as the incremental reducer in ``callhelm.board``:

* completed = ``end_time`` set, active = ``end_time`` null
* failed = status ``failed`` or ``abandoned``
* averages are ``sum / count`` with 0 for an empty set
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import structlog

from callhelm.board import BoardState, to_active_call
from callhelm.database import Database
from callhelm.models import (
    AgentState,
    AgentStatus,
    Call,
    CallStats,
    FAILURE_STATUSES,
    utcnow,
)

log = structlog.get_logger(__name__)


def start_of_day(now: datetime, tz_name: str = "UTC") -> datetime:
    """Midnight of ``now``'s calendar day in ``tz_name``, as an aware datetime."""
    tz = ZoneInfo(tz_name)
    local = now.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)


def _presence(member: dict) -> AgentState:
    try:
        return AgentState(member.get("presence") or AgentState.AVAILABLE.value)
    except ValueError:
        return AgentState.AVAILABLE


def compute_stats(open_calls: list[Call], today_calls: list[Call]) -> CallStats:
    completed = [c for c in today_calls if not c.is_open]
    total_duration = sum(c.effective_duration() for c in completed)
    return CallStats(
        total_calls=len(today_calls),
        active_calls=len(open_calls),
        completed_calls=len(completed),
        failed_calls=sum(1 for c in completed if c.status in FAILURE_STATUSES),
        avg_duration=total_duration / len(completed) if completed else 0.0,
        total_duration=total_duration,
    )


def compute_agent(member: dict, open_calls: list[Call], today_calls: list[Call]) -> AgentStatus:
    mine = [c for c in today_calls if c.member_id == member["id"]]
    done = [c for c in mine if not c.is_open]
    current = next((c for c in open_calls if c.member_id == member["id"]), None)

    activity = [c.end_time or c.start_time for c in mine]
    return AgentStatus(
        id=member["id"],
        name=member.get("full_name") or member.get("email") or "",
        email=member.get("email") or "",
        status=AgentState.BUSY if current else _presence(member),
        current_call_id=current.id if current else None,
        calls_today=len(mine),
        completed_calls=len(done),
        avg_call_time=sum(c.effective_duration() for c in done) / len(done) if done else 0.0,
        last_activity=max(activity) if activity else None,
    )


def project_board(
    open_calls: Iterable[Call],
    today_calls: Iterable[Call],
    members: Iterable[dict],
    contact_names: dict[str, str],
    now: datetime,
) -> BoardState:
    """Full board from rows: open calls, today's calls, active members and contact names."""
    open_calls = list(open_calls)
    today_calls = list(today_calls)
    members = list(members)
    agent_names = {m["id"]: m.get("full_name") or m.get("email") or "Unknown" for m in members}

    active = []
    for call in open_calls:
        entry = to_active_call(
            call,
            agent_name=agent_names.get(call.member_id or "", "Unknown"),
            contact_name=contact_names.get(call.contact_id or "", "Unknown"),
        )
        entry.duration_seconds = max(0, int((now - call.start_time).total_seconds()))
        active.append(entry)

    return BoardState(
        active_calls=active,
        agents=[compute_agent(m, open_calls, today_calls) for m in members],
        stats=compute_stats(open_calls, today_calls),
        settled_call_ids={c.id for c in today_calls if not c.is_open},
        loaded_at=now,
    )


async def load_board_snapshot(
    db: Database,
    organization_id: str,
    tz_name: str = "UTC",
    now: Optional[datetime] = None,
) -> BoardState:
    """Read-only reload of one tenant's board from the store."""
    now = now or utcnow()
    open_calls = await db.list_open_calls(organization_id)
    members = await db.list_active_members(organization_id)
    today_calls = await db.list_calls_since(organization_id, start_of_day(now, tz_name))
    contact_names = await db.get_contact_names(c.contact_id for c in open_calls)

    state = project_board(open_calls, today_calls, members, contact_names, now)
    log.debug(
        "board_snapshot_loaded",
        organization_id=organization_id,
        active=len(state.active_calls),
        agents=len(state.agents),
        total=state.stats.total_calls,
    )
    return state
