"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enums ───────────────────────────────────────────────────────
class CallStatus(str, enum.Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    ABANDONED = "abandoned"


# Counted as "failed" on the call board
FAILURE_STATUSES = frozenset({CallStatus.FAILED, CallStatus.ABANDONED})


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class BridgeStatus(str, enum.Enum):
    AGENT_RINGING = "agent_ringing"
    AGENT_ANSWERED = "agent_answered"
    CONTACT_RINGING = "contact_ringing"
    BRIDGED = "bridged"
    FAILED = "failed"


class EndpointType(str, enum.Enum):
    SIP = "sip"
    THREECX = "3cx"
    PHONE = "phone"


class AgentState(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    AFTER_CALL = "after-call"
    BREAK = "break"
    OFFLINE = "offline"


# ── Call metadata ───────────────────────────────────────────────
class CallMetadata(BaseModel):
    """
    Provider-specific bag attached to a call.

    Several writers touch it (initiation, timeout marking, manual end,
    orphan cleanup, the external webhook handler), so known keys are typed
    fields and everything else lives in ``extra``. A known key can never be
    shadowed by an ``extra`` entry, and updates merge instead of replace.
    """

    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)

    campaign_id: Optional[str] = None
    script_id: Optional[str] = None
    initiated_by: Optional[str] = None
    initial_status: Optional[str] = None
    call_status: Optional[str] = None
    external_id: Optional[str] = None
    provider: Optional[str] = None
    call_session_id: Optional[str] = None
    call_leg_id: Optional[str] = None
    recording_enabled: Optional[bool] = None
    flow: Optional[str] = None
    timeout_detected: Optional[bool] = None
    timeout_stage: Optional[str] = None
    timeout_at: Optional[str] = None
    failure_reason: Optional[str] = None
    ended_by: Optional[str] = None
    ended_at: Optional[str] = None
    auto_closed: Optional[bool] = None
    cleanup_reason: Optional[str] = None
    cleanup_at: Optional[str] = None

    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def known_keys(cls) -> frozenset[str]:
        return frozenset(k for k in cls.model_fields if k != "extra")

    @classmethod
    def from_dict(cls, data: Any) -> "CallMetadata":
        """Split a flat JSON object (or its serialised string) into known and extra keys."""
        if data is None or data == "":
            return cls()
        if isinstance(data, CallMetadata):
            return data
        if isinstance(data, str):
            data = json.loads(data)
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        keys = cls.known_keys()
        for key, value in data.items():
            if key in keys:
                known[key] = value
            else:
                extra[key] = value
        return cls(**known, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        """Flatten back to the stored JSON shape."""
        data = dict(self.extra)
        data.update(self.model_dump(mode="json", exclude={"extra"}, exclude_none=True))
        return data

    def merge(self, updates: "dict[str, Any] | CallMetadata") -> "CallMetadata":
        """Return a copy with ``updates`` layered over the existing keys."""
        patch = updates.to_dict() if isinstance(updates, CallMetadata) else updates
        merged = self.to_dict()
        merged.update(patch)
        return CallMetadata.from_dict(merged)


# ── Call record (persisted in DB) ───────────────────────────────
class Call(BaseModel):
    id: str
    organization_id: str
    external_id: Optional[str] = None
    direction: CallDirection = CallDirection.OUTBOUND
    caller_number: str = ""
    called_number: str = ""
    contact_id: Optional[str] = None
    call_list_id: Optional[str] = None
    member_id: Optional[str] = None
    status: CallStatus = CallStatus.INITIATED
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    bridge_status: Optional[BridgeStatus] = None
    agent_endpoint: Optional[str] = None
    agent_endpoint_type: Optional[EndpointType] = None
    agent_call_control_id: Optional[str] = None
    provider: Optional[str] = None
    webhook_last_received_at: Optional[datetime] = None
    metadata: CallMetadata = Field(default_factory=CallMetadata)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> CallMetadata:
        return CallMetadata.from_dict(value)

    @field_validator("start_time", "end_time", "created_at", "webhook_last_received_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def display_status(self) -> str:
        """Status as the UI should show it: webhook status, then initial status, then the stored enum."""
        return self.metadata.call_status or self.metadata.initial_status or self.status.value

    def effective_duration(self) -> int:
        """Vendor-reported duration, else derived from the timestamps, else 0."""
        if self.duration is not None:
            return self.duration
        if self.end_time is not None:
            return max(0, int((self.end_time - self.start_time).total_seconds()))
        return 0

    def to_record(self) -> dict[str, Any]:
        """Row-shaped dict (flat metadata) as carried by change events."""
        data = self.model_dump(mode="json", exclude={"metadata"})
        data["metadata"] = self.metadata.to_dict()
        return data


class ConditionalWrite(BaseModel):
    """
    Outcome of an update guarded by ``end_time IS NULL``.

    ``applied`` is False when zero rows matched (missing, wrong tenant, or
    already ended); ``call`` is the updated row when applied.
    """

    applied: bool
    call: Optional[Call] = None

    @property
    def rows_affected(self) -> int:
        return 1 if self.applied else 0


# ── Call board view models ──────────────────────────────────────
class ActiveCall(BaseModel):
    id: str
    agent_id: Optional[str] = None
    agent_name: str = "Unknown"
    contact_id: Optional[str] = None
    contact_name: str = "Unknown"
    phone_number: str = ""
    direction: CallDirection = CallDirection.OUTBOUND
    status: CallStatus = CallStatus.INITIATED
    bridge_status: Optional[BridgeStatus] = None
    call_list_id: Optional[str] = None
    start_time: datetime
    duration_seconds: int = 0


class AgentStatus(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    status: AgentState = AgentState.OFFLINE
    current_call_id: Optional[str] = None
    calls_today: int = 0
    completed_calls: int = 0
    avg_call_time: float = 0.0
    last_activity: Optional[datetime] = None


class CallStats(BaseModel):
    total_calls: int = 0
    active_calls: int = 0
    completed_calls: int = 0
    failed_calls: int = 0
    avg_duration: float = 0.0
    total_duration: int = 0

    @computed_field  # type: ignore[misc]
    @property
    def success_rate(self) -> float:
        if self.completed_calls == 0:
            return 0.0
        return round((self.completed_calls - self.failed_calls) / self.completed_calls * 100, 1)


# ── API payloads ────────────────────────────────────────────────
class InitiateCallRequest(BaseModel):
    """Body of POST /api/calls/initiate."""

    phone_number: str = Field(alias="phoneNumber", default="")
    contact_id: Optional[str] = Field(alias="contactId", default=None)
    call_list_id: Optional[str] = Field(alias="callListId", default=None)
    script_id: Optional[str] = Field(alias="scriptId", default=None)
    provider: Optional[str] = None
    use_bridge_flow: bool = Field(alias="useBridgeFlow", default=False)

    model_config = {"populate_by_name": True}


class InitiateCallResult(BaseModel):
    success: bool = True
    call_id: str = Field(alias="callId")
    external_id: Optional[str] = Field(alias="externalId", default=None)
    status: CallStatus

    model_config = {"populate_by_name": True}


class TimeoutRequest(BaseModel):
    """Body of POST /api/calls/{id}/timeout."""

    timeout_stage: str = Field(alias="timeoutStage", default="unknown")
    timeout_at: Optional[datetime] = Field(alias="timeoutAt", default=None)

    model_config = {"populate_by_name": True}
