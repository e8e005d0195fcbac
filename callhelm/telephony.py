"""
Telephony provider adapters for placing and ending outbound calls.

Each adapter maps a uniform dial request (from, to, recording, answering
machine detection, opaque client state) onto one vendor's call-control API
and returns the vendor identifiers as a ``ProviderCall``.
"""

from __future__ import annotations

import base64
import json
import re
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from callhelm.config import Settings
from callhelm.errors import (
    InvalidNumberError,
    InvalidRequestError,
    ProviderAuthError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderRejectedError,
)

log = structlog.get_logger(__name__)

# Vendor messages that point at one of the dialled numbers
_NUMBER_PROBLEM = re.compile(r"number|'to'|'from'|\bto\b address|destination", re.IGNORECASE)


class DialOptions(BaseModel):
    recording_enabled: bool = True
    answering_machine_detection: bool = False
    client_state: Optional[dict[str, Any]] = None
    webhook_url: Optional[str] = None


class ProviderCall(BaseModel):
    """Vendor identifiers for a freshly placed call."""

    call_control_id: str
    call_session_id: Optional[str] = None
    call_leg_id: Optional[str] = None


def encode_client_state(state: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(state, separators=(",", ":")).encode()).decode()


def decode_client_state(encoded: str) -> dict[str, Any]:
    return json.loads(base64.b64decode(encoded).decode())


class TelephonyProvider(ABC):
    """Base class: lazy httpx client plus vendor error mapping."""

    name: str = ""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def base_url(self) -> str: ...

    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def initiate(
        self, from_number: str, to_number: str, options: Optional[DialOptions] = None
    ) -> ProviderCall: ...

    @abstractmethod
    async def hangup(self, call_control_id: str) -> None: ...

    def _client_kwargs(self) -> dict[str, Any]:
        return {}

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=30.0,
                transport=self._transport,
                **self._client_kwargs(),
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfiguredError(self.name)

    @property
    def app_url(self) -> str:
        return self.settings.app_url.rstrip("/")

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            log.error("provider_unreachable", provider=self.name, error=str(e))
            raise ProviderRejectedError(self.name, f"{self.name} unreachable: {e}") from e
        if resp.is_error:
            raise self._map_error(resp)
        return resp

    def _error_message(self, resp: httpx.Response) -> str:
        return f"{self.name} API Error: {resp.status_code}"

    def _map_error(self, resp: httpx.Response) -> ProviderError:
        message = self._error_message(resp)
        log.error(
            "provider_request_failed",
            provider=self.name,
            status=resp.status_code,
            message=message,
        )
        if resp.status_code in (401, 403):
            return ProviderAuthError(self.name, message, resp.status_code)
        if resp.status_code in (400, 404, 422) and _NUMBER_PROBLEM.search(message):
            return InvalidNumberError(self.name, message, resp.status_code)
        return ProviderRejectedError(self.name, message, resp.status_code)


# ── Telnyx (Call Control v2) ────────────────────────────────────


class TelnyxProvider(TelephonyProvider):
    name = "telnyx"

    @property
    def base_url(self) -> str:
        return self.settings.telnyx_base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.settings.telnyx_api_key and self.settings.telnyx_connection_id)

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "headers": {
                "Authorization": f"Bearer {self.settings.telnyx_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        }

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            errors = resp.json().get("errors") or []
        except ValueError:
            errors = []
        if errors:
            return errors[0].get("detail") or errors[0].get("title") or super()._error_message(resp)
        return super()._error_message(resp)

    async def initiate(
        self, from_number: str, to_number: str, options: Optional[DialOptions] = None
    ) -> ProviderCall:
        self._require_configured()
        options = options or DialOptions()

        body: dict[str, Any] = {
            "connection_id": self.settings.telnyx_connection_id,
            "to": to_number,
            "from": from_number,
            "webhook_url": options.webhook_url or f"{self.app_url}/api/voice/telnyx/webhook",
            "webhook_url_method": "POST",
        }
        if options.recording_enabled:
            body["record"] = "record-from-answer"
            body["record_channels"] = "dual"
            body["record_format"] = "mp3"
        if options.answering_machine_detection:
            body["answering_machine_detection"] = "detect"
            body["answering_machine_detection_config"] = {
                "after_greeting_silence_millis": 800,
                "total_analysis_time_millis": 5000,
            }
        if options.client_state:
            body["client_state"] = encode_client_state(options.client_state)

        log.info("telnyx_dial", to=to_number, from_=from_number)
        resp = await self._send("POST", "/calls", json=body)
        payload = resp.json()
        data = payload.get("data", payload)
        call = ProviderCall(
            call_control_id=data["call_control_id"],
            call_session_id=data.get("call_session_id"),
            call_leg_id=data.get("call_leg_id"),
        )
        log.info("telnyx_call_placed", call_control_id=call.call_control_id)
        return call

    async def hangup(self, call_control_id: str) -> None:
        self._require_configured()
        await self._send("POST", f"/calls/{call_control_id}/actions/hangup", json={})
        log.info("telnyx_call_hungup", call_control_id=call_control_id)


# ── Twilio-compatible REST (Twilio, SignalWire LaML) ────────────


class TwilioProvider(TelephonyProvider):
    name = "twilio"

    @property
    def account_sid(self) -> str:
        return self.settings.twilio_account_sid

    @property
    def auth_token(self) -> str:
        return self.settings.twilio_auth_token

    @property
    def base_url(self) -> str:
        return f"{self.settings.twilio_base_url.rstrip('/')}/Accounts/{self.account_sid}"

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def _client_kwargs(self) -> dict[str, Any]:
        return {"auth": (self.account_sid, self.auth_token)}

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            message = resp.json().get("message")
        except ValueError:
            message = None
        return message or f"{super()._error_message(resp)} - {resp.text}"

    def _twiml_url(self, client_state: Optional[dict[str, Any]]) -> str:
        url = f"{self.app_url}/api/voice/twiml"
        if client_state:
            url += "?" + str(httpx.QueryParams({"client_state": encode_client_state(client_state)}))
        return url

    async def initiate(
        self, from_number: str, to_number: str, options: Optional[DialOptions] = None
    ) -> ProviderCall:
        self._require_configured()
        options = options or DialOptions()

        form: list[tuple[str, str]] = [
            ("From", from_number),
            ("To", to_number),
            ("Url", self._twiml_url(options.client_state)),
            ("Method", "POST"),
            ("StatusCallback", options.webhook_url or f"{self.app_url}/api/voice/status"),
        ]
        for event in ("initiated", "ringing", "answered", "completed"):
            form.append(("StatusCallbackEvent", event))
        if options.recording_enabled:
            form.append(("Record", "true"))
        if options.answering_machine_detection:
            form.append(("MachineDetection", "DetectMessageEnd"))

        log.info(f"{self.name}_dial", to=to_number, from_=from_number)
        resp = await self._send(
            "POST",
            "/Calls.json",
            content=str(httpx.QueryParams(form)),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        data = resp.json()
        call = ProviderCall(call_control_id=data["sid"], call_session_id=data.get("parent_call_sid"))
        log.info(f"{self.name}_call_placed", call_control_id=call.call_control_id)
        return call

    async def hangup(self, call_control_id: str) -> None:
        self._require_configured()
        await self._send("POST", f"/Calls/{call_control_id}.json", data={"Status": "completed"})
        log.info(f"{self.name}_call_hungup", call_control_id=call_control_id)


class SignalWireProvider(TwilioProvider):
    name = "signalwire"

    @property
    def account_sid(self) -> str:
        return self.settings.signalwire_project_id

    @property
    def auth_token(self) -> str:
        return self.settings.signalwire_api_token

    @property
    def base_url(self) -> str:
        space = self.settings.signalwire_space_url.removeprefix("https://").rstrip("/")
        return f"https://{space}/api/laml/2010-04-01/Accounts/{self.account_sid}"

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.settings.signalwire_space_url)


# ── Mock (no network) ───────────────────────────────────────────


class MockProvider(TelephonyProvider):
    """Fabricates vendor ids; used for development and tests."""

    name = "mock"

    @property
    def base_url(self) -> str:
        return "http://mock.invalid"

    def is_configured(self) -> bool:
        return True

    async def initiate(
        self, from_number: str, to_number: str, options: Optional[DialOptions] = None
    ) -> ProviderCall:
        call_id = f"mock-{uuid.uuid4().hex}"
        log.info("mock_call_placed", to=to_number, from_=from_number, call_control_id=call_id)
        return ProviderCall(
            call_control_id=call_id,
            call_session_id=f"mock-session-{uuid.uuid4().hex[:12]}",
            call_leg_id=f"mock-leg-{uuid.uuid4().hex[:12]}",
        )

    async def hangup(self, call_control_id: str) -> None:
        log.info("mock_call_hungup", call_control_id=call_control_id)


# ── Registry ────────────────────────────────────────────────────

_PROVIDERS: dict[str, type[TelephonyProvider]] = {
    "telnyx": TelnyxProvider,
    "twilio": TwilioProvider,
    "signalwire": SignalWireProvider,
    "mock": MockProvider,
}


def available_providers() -> list[str]:
    return list(_PROVIDERS)


def create_provider(
    settings: Settings,
    name: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TelephonyProvider:
    """Build the named adapter, defaulting to the deployment's configured vendor."""
    key = (name or settings.telephony_provider).lower()
    if key not in _PROVIDERS:
        raise InvalidRequestError(
            f"Unknown telephony provider: {key}. Available: {', '.join(available_providers())}"
        )
    return _PROVIDERS[key](settings, transport=transport)


class ProviderPool:
    """One long-lived adapter (and HTTP client) per vendor name."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._providers: dict[str, TelephonyProvider] = {}

    def get(self, name: Optional[str] = None) -> TelephonyProvider:
        key = (name or self.settings.telephony_provider).lower()
        if key not in self._providers:
            self._providers[key] = create_provider(self.settings, key, transport=self._transport)
        return self._providers[key]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
