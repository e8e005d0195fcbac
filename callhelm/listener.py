"""
Turns row-level ``calls`` notifications into call board events.

Classification of ``{eventType, new, old}``:

* INSERT                              -> NewCall (enriched with display names)
* UPDATE with ``new.end_time`` set    -> CallEnded
* UPDATE with ``new.end_time`` null   -> CallUpdated
* DELETE                              -> CallEnded for the old row

Channel status transitions are recorded for the watchdog and nothing more;
reconnecting is up to the transport.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

import pydantic
import structlog

from callhelm.board import BoardEvent, CallBoard, CallEnded, CallUpdated, NewCall
from callhelm.database import Database
from callhelm.models import Call, CallStatus, utcnow
from callhelm.realtime import ChangeEvent, ChangeSubscription, ChannelStatus

log = structlog.get_logger(__name__)


class CallChangeListener:
    def __init__(self, board: CallBoard, db: Database, feed: Any):
        self.board = board
        self.db = db
        self.feed = feed
        self.status = ChannelStatus.CLOSED
        self.last_event_at: Optional[datetime] = None
        self.subscription: Optional[ChangeSubscription] = None
        # Deliveries are classified and applied one at a time, in arrival order
        self._lock = asyncio.Lock()

    @property
    def healthy(self) -> bool:
        return self.status == ChannelStatus.SUBSCRIBED

    async def start(self) -> None:
        self.subscription = await self.feed.subscribe(
            "calls", self.board.organization_id, self.handle, self._on_status
        )

    async def stop(self) -> None:
        if self.subscription is not None:
            await self.subscription.close()
            self.subscription = None

    def _on_status(self, status: ChannelStatus) -> None:
        self.status = status
        if status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT):
            log.warning(
                "call_channel_degraded",
                organization_id=self.board.organization_id,
                status=status.value,
            )

    async def handle(self, event: ChangeEvent) -> None:
        async with self._lock:
            try:
                board_event = await self.classify(event)
            except pydantic.ValidationError as e:
                log.error(
                    "change_event_invalid",
                    organization_id=self.board.organization_id,
                    event_type=event.event_type,
                    error=str(e),
                )
                return
            if board_event is not None:
                self.board.dispatch(board_event)
            self.last_event_at = utcnow()

    async def classify(self, event: ChangeEvent) -> Optional[BoardEvent]:
        if event.event_type == "INSERT":
            call = Call.model_validate(event.new)
            agent_name, contact_name = await self._names(call)
            return NewCall(call=call, agent_name=agent_name, contact_name=contact_name)

        if event.event_type == "UPDATE":
            call = Call.model_validate(event.new)
            if not call.is_open:
                return CallEnded.from_call(call)
            if self.board.state.is_active(call.id):
                return CallUpdated(call=call)
            agent_name, contact_name = await self._names(call)
            return CallUpdated(call=call, agent_name=agent_name, contact_name=contact_name)

        return self._deleted(event.old)

    def _deleted(self, old: dict[str, Any]) -> Optional[CallEnded]:
        call_id = old.get("id")
        if not call_id:
            log.warning("delete_without_id", organization_id=self.board.organization_id)
            return None
        try:
            return CallEnded.from_call(Call.model_validate(old))
        except pydantic.ValidationError:
            # Partial old row (primary key only): fall back to what the board knows
            local = self.board.state.find_call(call_id)
            return CallEnded(
                call_id=call_id,
                status=local.status if local else CallStatus.COMPLETED,
                member_id=local.agent_id if local else None,
            )

    async def _names(self, call: Call) -> tuple[str, str]:
        agent = self.board.state.find_agent(call.member_id)
        agent_name = agent.name if agent and agent.name else "Unknown"
        contact_name = "Unknown"
        if call.contact_id:
            names = await self.db.get_contact_names([call.contact_id])
            contact_name = names.get(call.contact_id) or "Unknown"
        return agent_name, contact_name
