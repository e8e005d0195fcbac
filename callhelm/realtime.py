"""
Row-level change notifications.

A change feed delivers ``{eventType, new, old}`` events for one table,
filtered to one tenant, to an async handler, and reports channel status
transitions to a status callback. Two transports implement it:

* ``InProcessChangeFeed`` (here) - published by the SQLite store on every
  ``calls`` write; used for local runs and tests.
* ``PostgresChangeFeed`` (``callhelm.saas_db``) - LISTEN/NOTIFY driven.

Handlers only interpret events; reconnecting is the transport's job.
"""

from __future__ import annotations

import enum
from typing import Any, Awaitable, Callable, Literal, Optional

import structlog
from pydantic import BaseModel, Field, field_validator

log = structlog.get_logger(__name__)


class ChannelStatus(str, enum.Enum):
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEvent(BaseModel):
    event_type: Literal["INSERT", "UPDATE", "DELETE"] = Field(alias="eventType")
    table: str = "calls"
    organization_id: Optional[str] = None
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    @field_validator("new", "old", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}


EventHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusHandler = Callable[[ChannelStatus], None]


class ChangeSubscription:
    """One subscriber's view of a channel: filter, handlers and status."""

    def __init__(
        self,
        feed: Any,
        table: str,
        organization_id: Optional[str],
        on_event: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ):
        self.feed = feed
        self.table = table
        self.organization_id = organization_id
        self.on_event = on_event
        self.on_status = on_status
        self.status = ChannelStatus.CLOSED

    @property
    def channel_name(self) -> str:
        return f"{self.table}:{self.organization_id or '*'}"

    def set_status(self, status: ChannelStatus) -> None:
        if status == self.status:
            return
        previous = self.status
        self.status = status
        log.info(
            "channel_status",
            channel=self.channel_name,
            previous=previous.value,
            status=status.value,
        )
        if self.on_status is not None:
            self.on_status(status)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return self.organization_id is None or event.organization_id == self.organization_id

    async def deliver(self, event: ChangeEvent) -> None:
        # Nothing reaches a subscriber whose channel is down; the watchdog
        # reconciles whatever was missed.
        if self.status != ChannelStatus.SUBSCRIBED:
            log.debug("change_dropped", channel=self.channel_name, status=self.status.value)
            return
        try:
            await self.on_event(event)
        except Exception as e:
            log.error(
                "change_handler_failed",
                channel=self.channel_name,
                event_type=event.event_type,
                error=str(e),
            )

    async def close(self) -> None:
        await self.feed.unsubscribe(self)


class InProcessChangeFeed:
    """Fan-out of store writes to subscribers living in the same process."""

    def __init__(self) -> None:
        self._subscriptions: list[ChangeSubscription] = []

    async def subscribe(
        self,
        table: str,
        organization_id: Optional[str],
        on_event: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> ChangeSubscription:
        sub = ChangeSubscription(self, table, organization_id, on_event, on_status)
        sub.set_status(ChannelStatus.CONNECTING)
        self._subscriptions.append(sub)
        sub.set_status(ChannelStatus.SUBSCRIBED)
        return sub

    async def unsubscribe(self, sub: ChangeSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        sub.set_status(ChannelStatus.CLOSED)

    async def reconnect(self, sub: ChangeSubscription) -> None:
        """Bring an errored subscription back to SUBSCRIBED."""
        if sub not in self._subscriptions:
            return
        sub.set_status(ChannelStatus.CONNECTING)
        sub.set_status(ChannelStatus.SUBSCRIBED)

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            if sub.matches(event):
                await sub.deliver(event)

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await self.unsubscribe(sub)
