"""
Per-tenant call board sessions.

A session wires a ``CallBoard`` to its change listener, the staleness
watchdog and the duration ticker, and owns the reload path. Sessions are
started lazily by ``CallBoardRegistry`` the first time a tenant's board is
requested and torn down together on shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog

from callhelm.board import BoardState, CallBoard
from callhelm.config import Settings
from callhelm.database import Database
from callhelm.listener import CallChangeListener
from callhelm.projector import load_board_snapshot, start_of_day
from callhelm.watchdog import DurationTicker, StalenessWatchdog

log = structlog.get_logger(__name__)


class CallBoardSession:
    def __init__(self, db: Database, organization_id: str, settings: Settings):
        self.db = db
        self.settings = settings
        self.organization_id = organization_id
        self.board = CallBoard(organization_id)
        self.listener = CallChangeListener(self.board, db, db.feed)
        self.watchdog = StalenessWatchdog(
            is_healthy=lambda: self.listener.healthy,
            last_activity=lambda: self.listener.last_event_at,
            reconcile=self.reload,
            covers=self.covers_day,
            threshold_seconds=settings.board_staleness_threshold_seconds,
            interval_seconds=settings.board_reconcile_interval_seconds,
        )
        self.ticker = DurationTicker(self.board, settings.board_tick_seconds)
        self._reload_lock = asyncio.Lock()
        self.started = False

    async def start(self) -> None:
        # Subscribe before the first load so nothing falls between the two
        await self.listener.start()
        await self.reload()
        self.watchdog.mark_reconciled()
        self.watchdog.start()
        self.ticker.start()
        self.started = True
        log.info("call_board_started", organization_id=self.organization_id)

    async def stop(self) -> None:
        await self.ticker.stop()
        await self.watchdog.stop()
        await self.listener.stop()
        self.started = False
        log.info("call_board_stopped", organization_id=self.organization_id)

    def covers_day(self, now: datetime) -> bool:
        """Whether the loaded snapshot's "today" is still the calendar day of ``now``."""
        loaded_at = self.board.state.loaded_at
        if loaded_at is None:
            return True
        tz_name = self.settings.board_timezone
        return start_of_day(loaded_at, tz_name) == start_of_day(now, tz_name)

    async def reload(self) -> BoardState:
        """Replace the board with a fresh snapshot, replaying events seen meanwhile."""
        async with self._reload_lock:
            self.board.begin_reload()
            try:
                snapshot = await load_board_snapshot(
                    self.db, self.organization_id, self.settings.board_timezone
                )
            except Exception:
                self.board.abort_reload()
                raise
            state = self.board.complete_reload(snapshot)
        log.debug("call_board_reloaded", organization_id=self.organization_id)
        return state

    def snapshot(self) -> dict[str, Any]:
        state = self.board.state
        return {
            "organizationId": self.organization_id,
            "activeCalls": [c.model_dump(mode="json") for c in state.active_calls],
            "agents": [a.model_dump(mode="json") for a in state.agents],
            "stats": state.stats.model_dump(mode="json"),
            "channelStatus": self.listener.status.value,
            "lastEventAt": self.listener.last_event_at.isoformat() if self.listener.last_event_at else None,
            "loadedAt": state.loaded_at.isoformat() if state.loaded_at else None,
        }


class CallBoardRegistry:
    """Lazily started board sessions, one per tenant."""

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        self._sessions: dict[str, CallBoardSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, organization_id: str) -> CallBoardSession:
        async with self._lock:
            session = self._sessions.get(organization_id)
            if session is None:
                session = CallBoardSession(self.db, organization_id, self.settings)
                await session.start()
                self._sessions[organization_id] = session
            return session

    def peek(self, organization_id: str) -> Optional[CallBoardSession]:
        return self._sessions.get(organization_id)

    async def stop_all(self) -> None:
        async with self._lock:
            for session in self._sessions.values():
                await session.stop()
            self._sessions.clear()
