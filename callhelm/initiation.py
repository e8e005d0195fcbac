"""
Outbound call initiation.

Normalises the destination, resolves who is calling (the tenant's primary
number, or the agent's endpoint for a bridge call), gates on the usage quota,
dials through a provider adapter and writes exactly one Call row. Campaign
progress and the usage ledger are updated on a best-effort basis afterwards.

Initiation is not idempotent: the same request twice dials twice.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from callhelm.config import Settings
from callhelm.database import Database
from callhelm.errors import (
    InvalidRequestError,
    OrganizationNotFoundError,
    PersistenceError,
    QuotaExceededError,
)
from callhelm.models import (
    BridgeStatus,
    Call,
    CallDirection,
    CallMetadata,
    CallStatus,
    EndpointType,
    InitiateCallRequest,
    InitiateCallResult,
    utcnow,
)
from callhelm.phone_utils import is_sip_uri, normalize_phone, sip_uri_for_extension
from callhelm.telephony import DialOptions, MockProvider, ProviderCall, ProviderPool

log = structlog.get_logger(__name__)

CALL_MINUTES = "call_minutes"
GATED_TIER = "starter"


def resolve_agent_endpoint(member: dict, settings: Settings) -> tuple[str, EndpointType]:
    """
    Where the agent leg of a bridge call rings.

    A configured endpoint wins (SIP URI or phone number); otherwise a 3CX
    extension is turned into a SIP URI on the configured 3CX domain.
    """
    endpoint = (member.get("agent_endpoint") or "").strip()
    if endpoint:
        declared = member.get("agent_endpoint_type")
        if is_sip_uri(endpoint):
            return endpoint, EndpointType.THREECX if declared == "3cx" else EndpointType.SIP
        number = normalize_phone(endpoint)
        if number is None:
            raise InvalidRequestError("Agent endpoint is not a valid phone number or SIP URI")
        return number, EndpointType.PHONE

    extension = (member.get("threecx_extension") or "").strip()
    if extension:
        try:
            return sip_uri_for_extension(extension, settings.threecx_sip_domain), EndpointType.THREECX
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

    raise InvalidRequestError(
        "No agent endpoint configured. Set a SIP URI, 3CX extension or phone number for this agent."
    )


class CallInitiator:
    """Places outbound calls on behalf of authenticated members."""

    def __init__(self, db: Database, settings: Settings, providers: ProviderPool):
        self.db = db
        self.settings = settings
        self.providers = providers

    async def initiate(self, user_id: str, request: InitiateCallRequest) -> InitiateCallResult:
        if not request.phone_number.strip():
            raise InvalidRequestError("Phone number is required")

        member = await self.db.get_member_for_user(user_id)
        if not member or not member.get("organization_id"):
            raise OrganizationNotFoundError()
        organization_id = member["organization_id"]

        destination = normalize_phone(request.phone_number)
        if destination is None:
            raise InvalidRequestError("Invalid phone number format")

        await self._check_quota(organization_id)

        provider = self.providers.get(self._provider_name(request))
        caller_number = await self.db.get_primary_outbound_number(organization_id)
        if not caller_number:
            raise InvalidRequestError("No active outbound phone number configured for this organization")

        now = utcnow()
        bridge: dict[str, Any] = {}
        if request.use_bridge_flow:
            agent_endpoint, endpoint_type = resolve_agent_endpoint(member, self.settings)
            options = DialOptions(
                recording_enabled=self.settings.recording_enabled,
                client_state={
                    "bridgeFlow": True,
                    "phase": "agent_leg",
                    "contactNumber": destination,
                    "callerNumber": caller_number,
                    "organizationId": organization_id,
                    "memberId": member["id"],
                    "contactId": request.contact_id,
                    "callListId": request.call_list_id,
                },
            )
            log.info(
                "bridge_call_dialling_agent",
                organization_id=organization_id,
                endpoint_type=endpoint_type.value,
            )
            placed = await provider.initiate(caller_number, agent_endpoint, options)
            bridge = {
                "bridge_status": BridgeStatus.AGENT_RINGING,
                "agent_endpoint": agent_endpoint,
                "agent_endpoint_type": endpoint_type,
                "agent_call_control_id": placed.call_control_id,
            }
        else:
            options = DialOptions(
                recording_enabled=self.settings.recording_enabled,
                answering_machine_detection=self.settings.answering_machine_detection,
                client_state={
                    "organizationId": organization_id,
                    "memberId": member["id"],
                    "contactId": request.contact_id,
                    "callListId": request.call_list_id,
                },
            )
            placed = await provider.initiate(caller_number, destination, options)

        call = Call(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            external_id=placed.call_control_id,
            direction=CallDirection.OUTBOUND,
            caller_number=caller_number,
            called_number=destination,
            contact_id=request.contact_id,
            call_list_id=request.call_list_id,
            member_id=member["id"],
            # Placeholder; the lifecycle status arrives later through the webhook
            status=CallStatus.ANSWERED,
            start_time=now,
            provider=provider.name,
            metadata=self._metadata(user_id, request, provider.name, placed),
            created_at=now,
            **bridge,
        )

        try:
            await self.db.insert_call(call)
        except Exception as e:
            # The vendor call is live but untracked
            log.error(
                "orphaned_vendor_call",
                organization_id=organization_id,
                provider=provider.name,
                external_id=placed.call_control_id,
                error=str(e),
            )
            raise PersistenceError("Failed to create call record") from e

        log.info(
            "call_initiated",
            call_id=call.id,
            organization_id=organization_id,
            provider=provider.name,
            external_id=call.external_id,
            bridge=request.use_bridge_flow,
        )

        await self._record_side_effects(call, user_id)

        return InitiateCallResult(
            call_id=call.id,
            external_id=call.external_id,
            status=call.status,
        )

    # ── Internal helpers ────────────────────────────────────────

    def _provider_name(self, request: InitiateCallRequest) -> str:
        # Only the mock vendor may be picked per request
        if (request.provider or "").strip().lower() == MockProvider.name:
            return MockProvider.name
        if request.provider and request.provider.lower() != self.settings.telephony_provider.lower():
            log.info(
                "requested_provider_ignored",
                requested=request.provider,
                provider=self.settings.telephony_provider,
            )
        return self.settings.telephony_provider

    async def _check_quota(self, organization_id: str) -> None:
        usage = await self.db.get_usage(organization_id, CALL_MINUTES, utcnow())
        organization = await self.db.get_organization(organization_id)

        used = float((usage or {}).get("used_amount") or 0)
        included = float((usage or {}).get("tier_included") or 0)
        tier = (organization or {}).get("subscription_tier")

        if used >= included and tier == GATED_TIER:
            log.warning(
                "call_quota_exceeded",
                organization_id=organization_id,
                used_minutes=used,
                included_minutes=included,
            )
            raise QuotaExceededError(used, included)

    def _metadata(
        self,
        user_id: str,
        request: InitiateCallRequest,
        provider_name: str,
        placed: ProviderCall,
    ) -> CallMetadata:
        return CallMetadata(
            campaign_id=request.call_list_id,
            script_id=request.script_id,
            initiated_by=user_id,
            initial_status=CallStatus.INITIATED.value,
            call_status=CallStatus.INITIATED.value,
            external_id=placed.call_control_id,
            provider=provider_name,
            call_session_id=placed.call_session_id,
            call_leg_id=placed.call_leg_id,
            recording_enabled=self.settings.recording_enabled,
            flow="bridge" if request.use_bridge_flow else "direct",
        )

    async def _record_side_effects(self, call: Call, user_id: str) -> None:
        """Campaign attempt counter and zero-amount usage event; failures are only logged."""
        if call.call_list_id and call.contact_id:
            try:
                updated = await self.db.record_campaign_attempt(
                    call.call_list_id, call.contact_id, call.start_time
                )
                if not updated:
                    log.info(
                        "campaign_contact_missing",
                        call_list_id=call.call_list_id,
                        contact_id=call.contact_id,
                    )
            except Exception as e:
                log.warning("campaign_attempt_update_failed", call_id=call.id, error=str(e))

        try:
            await self.db.log_usage_event(
                organization_id=call.organization_id,
                resource_type=CALL_MINUTES,
                amount=0,
                unit_cost=self.settings.overage_unit_cost,
                description=f"Outbound call to {call.called_number}",
                campaign_id=call.call_list_id,
                agent_id=user_id,
                contact_id=call.contact_id,
                call_attempt_id=call.id,
                metadata={
                    "call_id": call.id,
                    "external_id": call.external_id,
                    "provider": call.provider,
                    "initiated_at": call.start_time.isoformat(),
                },
            )
        except Exception as e:
            log.warning("usage_event_failed", call_id=call.id, error=str(e))

