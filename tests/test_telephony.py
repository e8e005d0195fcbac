"""Tests for telephony provider adapters (vendor HTTP mocked with httpx.MockTransport)."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from callhelm.config import Settings
from callhelm.errors import (
    InvalidNumberError,
    InvalidRequestError,
    ProviderAuthError,
    ProviderNotConfiguredError,
    ProviderRejectedError,
)
from callhelm.telephony import (
    DialOptions,
    MockProvider,
    ProviderPool,
    SignalWireProvider,
    TelnyxProvider,
    TwilioProvider,
    create_provider,
    decode_client_state,
)


def _settings(**kw):
    base = dict(
        _env_file=None,
        app_url="https://callhelm.test",
        telnyx_api_key="KEY",
        telnyx_connection_id="CONN",
        twilio_account_sid="AC123",
        twilio_auth_token="tok",
        signalwire_project_id="proj",
        signalwire_api_token="swtok",
        signalwire_space_url="acme.signalwire.com",
    )
    base.update(kw)
    return Settings(**base)


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    @property
    def transport(self):
        return httpx.MockTransport(self)


# ── Telnyx ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_telnyx_dial_request_shape():
    rec = Recorder(body={"data": {"call_control_id": "v3:abc", "call_session_id": "s1", "call_leg_id": "l1"}})
    provider = TelnyxProvider(_settings(), transport=rec.transport)

    placed = await provider.initiate(
        "+15550001111",
        "+14155551234",
        DialOptions(recording_enabled=True, answering_machine_detection=True, client_state={"phase": "x"}),
    )
    await provider.close()

    assert placed.call_control_id == "v3:abc"
    assert placed.call_session_id == "s1"
    req = rec.requests[0]
    assert req.method == "POST"
    assert req.url.path.endswith("/calls")
    assert req.headers["authorization"] == "Bearer KEY"
    body = json.loads(req.content)
    assert body["connection_id"] == "CONN"
    assert body["to"] == "+14155551234"
    assert body["from"] == "+15550001111"
    assert body["webhook_url"] == "https://callhelm.test/api/voice/telnyx/webhook"
    assert body["record"] == "record-from-answer"
    assert body["answering_machine_detection"] == "detect"
    assert decode_client_state(body["client_state"]) == {"phase": "x"}


@pytest.mark.asyncio
async def test_telnyx_without_recording_or_amd():
    rec = Recorder(body={"data": {"call_control_id": "v3:abc"}})
    provider = TelnyxProvider(_settings(), transport=rec.transport)
    await provider.initiate("+15550001111", "+14155551234", DialOptions(recording_enabled=False))
    body = json.loads(rec.requests[0].content)
    assert "record" not in body
    assert "answering_machine_detection" not in body
    assert "client_state" not in body


@pytest.mark.asyncio
async def test_telnyx_hangup():
    rec = Recorder(body={"data": {}})
    provider = TelnyxProvider(_settings(), transport=rec.transport)
    await provider.hangup("v3:abc")
    assert rec.requests[0].url.path.endswith("/calls/v3:abc/actions/hangup")


@pytest.mark.asyncio
async def test_telnyx_auth_error():
    rec = Recorder(status=401, body={"errors": [{"title": "Authentication failed"}]})
    provider = TelnyxProvider(_settings(), transport=rec.transport)
    with pytest.raises(ProviderAuthError) as exc:
        await provider.initiate("+15550001111", "+14155551234")
    assert "Authentication failed" in exc.value.message
    assert exc.value.vendor_status == 401


@pytest.mark.asyncio
async def test_telnyx_invalid_number():
    rec = Recorder(status=422, body={"errors": [{"detail": "The 'to' number is not a valid number"}]})
    provider = TelnyxProvider(_settings(), transport=rec.transport)
    with pytest.raises(InvalidNumberError) as exc:
        await provider.initiate("+15550001111", "+10000000000")
    assert exc.value.status_code == 500
    assert exc.value.message.startswith("Failed to initiate call:")


@pytest.mark.asyncio
async def test_telnyx_other_rejection():
    rec = Recorder(status=503, body={})
    provider = TelnyxProvider(_settings(), transport=rec.transport)
    with pytest.raises(ProviderRejectedError) as exc:
        await provider.initiate("+15550001111", "+14155551234")
    assert "503" in exc.value.message


@pytest.mark.asyncio
async def test_transport_failure_is_rejection():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = TelnyxProvider(_settings(), transport=httpx.MockTransport(boom))
    with pytest.raises(ProviderRejectedError):
        await provider.initiate("+15550001111", "+14155551234")


@pytest.mark.asyncio
async def test_unconfigured_provider():
    provider = TelnyxProvider(_settings(telnyx_api_key=""))
    with pytest.raises(ProviderNotConfiguredError) as exc:
        await provider.initiate("+15550001111", "+14155551234")
    assert exc.value.status_code == 503


# ── Twilio / SignalWire ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_twilio_dial_form():
    rec = Recorder(status=201, body={"sid": "CA999"})
    provider = TwilioProvider(_settings(), transport=rec.transport)
    placed = await provider.initiate(
        "+15550001111", "+14155551234", DialOptions(answering_machine_detection=True, client_state={"a": 1})
    )

    assert placed.call_control_id == "CA999"
    req = rec.requests[0]
    assert req.url.path == "/2010-04-01/Accounts/AC123/Calls.json"
    assert req.headers["authorization"].startswith("Basic ")
    form = parse_qs(req.content.decode())
    assert form["To"] == ["+14155551234"]
    assert form["From"] == ["+15550001111"]
    assert form["StatusCallbackEvent"] == ["initiated", "ringing", "answered", "completed"]
    assert form["Record"] == ["true"]
    assert form["MachineDetection"] == ["DetectMessageEnd"]
    assert form["Url"][0].startswith("https://callhelm.test/api/voice/twiml?client_state=")


@pytest.mark.asyncio
async def test_twilio_error_message_passthrough():
    rec = Recorder(status=400, body={"message": "The 'To' number +1000 is not a valid phone number."})
    provider = TwilioProvider(_settings(), transport=rec.transport)
    with pytest.raises(InvalidNumberError) as exc:
        await provider.initiate("+15550001111", "+1000")
    assert "not a valid phone number" in exc.value.message


@pytest.mark.asyncio
async def test_signalwire_base_url():
    rec = Recorder(status=201, body={"sid": "sw-1"})
    provider = SignalWireProvider(_settings(), transport=rec.transport)
    await provider.initiate("+15550001111", "+14155551234")
    url = rec.requests[0].url
    assert url.host == "acme.signalwire.com"
    assert url.path == "/api/laml/2010-04-01/Accounts/proj/Calls.json"


@pytest.mark.asyncio
async def test_twilio_hangup():
    rec = Recorder(body={"sid": "CA999", "status": "completed"})
    provider = TwilioProvider(_settings(), transport=rec.transport)
    await provider.hangup("CA999")
    req = rec.requests[0]
    assert req.url.path.endswith("/Calls/CA999.json")
    assert parse_qs(req.content.decode()) == {"Status": ["completed"]}


# ── Registry ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_mock_provider_ids_are_unique():
    provider = MockProvider(_settings())
    a = await provider.initiate("+15550001111", "+14155551234")
    b = await provider.initiate("+15550001111", "+14155551234")
    assert a.call_control_id != b.call_control_id


def test_create_provider_defaults_to_deployment_vendor():
    assert isinstance(create_provider(_settings(telephony_provider="twilio")), TwilioProvider)
    assert isinstance(create_provider(_settings(), "MOCK"), MockProvider)


def test_create_provider_unknown():
    with pytest.raises(InvalidRequestError):
        create_provider(_settings(), "carrier-pigeon")


def test_pool_reuses_adapters():
    pool = ProviderPool(_settings(telephony_provider="mock"))
    assert pool.get() is pool.get("mock")
