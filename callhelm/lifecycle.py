"""
Call lifecycle operations outside of initiation: status lookup, timeout
marking, manual end, the orphaned-call sweep and a per-tenant health check.

Every state-changing operation goes through the store's conditional write
(``end_time IS NULL``), so a call that has already ended is never touched
twice and the caller learns about it as a typed outcome.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from callhelm.config import Settings
from callhelm.database import Database
from callhelm.errors import CallHelmError, NotFoundError
from callhelm.models import Call, CallStatus, TimeoutRequest, utcnow
from callhelm.telephony import ProviderPool

log = structlog.get_logger(__name__)

HEALTH_WINDOW_MINUTES = 10
MAX_RECENT_TIMEOUTS = 3
WEBHOOK_GRACE_SECONDS = 30
WEBHOOK_SILENCE_SECONDS = 120


class CallLifecycle:
    def __init__(self, db: Database, settings: Settings, providers: ProviderPool):
        self.db = db
        self.settings = settings
        self.providers = providers

    async def get_status(self, organization_id: str, call_id: str) -> dict[str, Any]:
        call = await self.db.get_call(call_id, organization_id)
        if call is None:
            raise NotFoundError("Call not found")
        return {
            "callId": call.id,
            "status": call.display_status,
            "startTime": call.start_time.isoformat(),
            "endTime": call.end_time.isoformat() if call.end_time else None,
            "duration": call.duration,
            "externalId": call.external_id,
        }

    async def mark_timed_out(
        self, organization_id: str, call_id: str, request: TimeoutRequest
    ) -> Call:
        """
        Mark an open call as failed because the client gave up waiting on it.

        Timeout details are merged into the existing metadata. Raises
        NotFoundError when the call is missing or already ended; nothing is
        written in that case.
        """
        timeout_at = request.timeout_at or utcnow()
        result = await self.db.update_open_call(
            call_id,
            organization_id,
            {"status": CallStatus.FAILED, "end_time": timeout_at},
            {
                "timeout_detected": True,
                "timeout_stage": request.timeout_stage,
                "timeout_at": timeout_at.isoformat(),
                "failure_reason": f"Timeout at {request.timeout_stage} stage",
                "call_status": CallStatus.FAILED.value,
            },
        )
        if not result.applied:
            raise NotFoundError("Call not found or already ended")

        log.info("call_timed_out", call_id=call_id, stage=request.timeout_stage)
        return result.call

    async def end_call(self, organization_id: str, call_id: str, user_id: str) -> Call:
        """Hang up at the vendor (best effort) and close the row as abandoned."""
        call = await self.db.get_call(call_id, organization_id)
        if call is None or not call.is_open:
            raise NotFoundError("Call not found")

        external_id = call.metadata.external_id or call.external_id
        provider_name = call.metadata.provider or call.provider
        if external_id:
            try:
                await self.providers.get(provider_name).hangup(external_id)
            except CallHelmError as e:
                log.warning(
                    "provider_hangup_failed",
                    call_id=call_id,
                    provider=provider_name,
                    error=e.message,
                )

        now = utcnow()
        result = await self.db.update_open_call(
            call_id,
            organization_id,
            {"status": CallStatus.ABANDONED, "end_time": now},
            {"call_status": "ended", "ended_by": user_id, "ended_at": now.isoformat()},
        )
        if not result.applied:
            raise NotFoundError("Call not found or already ended")

        log.info("call_ended_manually", call_id=call_id, ended_by=user_id)
        return result.call

    async def cleanup_orphaned(self, now: Optional[datetime] = None) -> int:
        """
        Close calls whose webhooks never arrived.

        * still ``initiated`` after ``stuck_initiated_minutes`` -> failed
        * still ``ringing``/``answered`` after ``stuck_ringing_minutes`` -> no-answer

        Returns the number of calls closed.
        """
        now = now or utcnow()
        initiated_cutoff = now - timedelta(minutes=self.settings.stuck_initiated_minutes)
        ringing_cutoff = now - timedelta(minutes=self.settings.stuck_ringing_minutes)

        candidates = await self.db.list_open_calls_created_before(max(initiated_cutoff, ringing_cutoff))
        cleaned = 0
        for call in candidates:
            status = call.display_status
            if status == CallStatus.INITIATED.value and call.created_at < initiated_cutoff:
                changes = {"status": CallStatus.FAILED, "end_time": now}
                patch = {"cleanup_reason": "stuck_initiated", "call_status": CallStatus.FAILED.value}
            elif status in (CallStatus.RINGING.value, CallStatus.ANSWERED.value) and call.created_at < ringing_cutoff:
                changes = {"status": CallStatus.NO_ANSWER, "end_time": now}
                patch = {"cleanup_reason": "stuck_ringing", "call_status": "missed"}
            else:
                continue

            patch.update({"auto_closed": True, "cleanup_at": now.isoformat()})
            result = await self.db.update_open_call(call.id, call.organization_id, changes, patch)
            if result.applied:
                cleaned += 1
                log.info("orphaned_call_closed", call_id=call.id, reason=patch["cleanup_reason"])

        log.info("orphaned_cleanup_complete", candidates=len(candidates), cleaned=cleaned)
        return cleaned

    async def health_check(self, organization_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Call-system health for one tenant over the last ten minutes.

        Unhealthy when more than three recent calls timed out, or when an open
        call has gone without webhook updates (none within 30 seconds of being
        created, or none for the last two minutes).
        """
        now = now or utcnow()
        try:
            recent = await self.db.list_calls_created_since(
                organization_id, now - timedelta(minutes=HEALTH_WINDOW_MINUTES)
            )
        except Exception as e:
            log.error("call_health_check_failed", organization_id=organization_id, error=str(e))
            return {"healthy": True, "message": "Unable to check system health"}

        timeouts = sum(1 for c in recent if _timed_out(c))
        open_calls = [c for c in recent if c.is_open]
        webhook_stale = any(_webhook_stale(c, now) for c in open_calls)
        failure_rate = round(timeouts / len(recent) * 100) if recent else 0

        if timeouts > MAX_RECENT_TIMEOUTS:
            message = "High number of call failures detected"
        elif webhook_stale:
            message = "Call system not receiving updates"
        else:
            message = "System healthy"

        log.debug(
            "call_health_check",
            organization_id=organization_id,
            recent=len(recent),
            timeouts=timeouts,
            webhook_stale=webhook_stale,
        )
        return {
            "healthy": timeouts <= MAX_RECENT_TIMEOUTS and not webhook_stale,
            "recentTimeouts": timeouts,
            "webhookStale": webhook_stale,
            "totalRecentCalls": len(recent),
            "activeCallsCount": len(open_calls),
            "failureRate": failure_rate,
            "message": message,
        }


def _timed_out(call: Call) -> bool:
    return bool(call.metadata.timeout_detected) or "timeout" in (call.metadata.failure_reason or "").lower()


def _webhook_stale(call: Call, now: datetime) -> bool:
    last = call.webhook_last_received_at
    if last is None:
        return (now - call.created_at).total_seconds() > WEBHOOK_GRACE_SECONDS
    return (now - last).total_seconds() > WEBHOOK_SILENCE_SECONDS
