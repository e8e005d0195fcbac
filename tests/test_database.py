"""Tests for database operations."""

from datetime import timedelta

import pytest

from callhelm.models import CallStatus, utcnow
from callhelm.realtime import ChangeEvent


@pytest.mark.asyncio
async def test_insert_and_get_call(db, tenant, call_factory):
    call = call_factory(tenant["organization_id"], metadata={"provider": "mock", "custom": "x"})
    await db.insert_call(call)

    fetched = await db.get_call(call.id)
    assert fetched is not None
    assert fetched.called_number == "+14155551234"
    assert fetched.status == CallStatus.ANSWERED
    assert fetched.metadata.provider == "mock"
    assert fetched.metadata.extra == {"custom": "x"}
    assert fetched.start_time == call.start_time


@pytest.mark.asyncio
async def test_get_call_is_tenant_scoped(db, tenant, call_factory):
    call = call_factory(tenant["organization_id"])
    await db.insert_call(call)
    other = await db.create_organization("Other")

    assert await db.get_call(call.id, other) is None
    assert await db.get_call(call.id, tenant["organization_id"]) is not None


@pytest.mark.asyncio
async def test_conditional_write_merges_metadata(db, tenant, call_factory):
    call = call_factory(tenant["organization_id"], metadata={"provider": "mock", "recording_url": "r"})
    await db.insert_call(call)

    result = await db.update_open_call(
        call.id,
        tenant["organization_id"],
        {"status": CallStatus.FAILED, "end_time": utcnow()},
        {"timeout_detected": True},
    )
    assert result.applied is True
    assert result.rows_affected == 1
    data = result.call.metadata.to_dict()
    assert data["provider"] == "mock"
    assert data["recording_url"] == "r"
    assert data["timeout_detected"] is True


@pytest.mark.asyncio
async def test_conditional_write_skips_ended_call(db, tenant, call_factory):
    ended_at = utcnow()
    call = call_factory(
        tenant["organization_id"],
        status=CallStatus.COMPLETED,
        end_time=ended_at,
        metadata={"call_status": "completed"},
    )
    await db.insert_call(call)

    result = await db.update_open_call(
        call.id, tenant["organization_id"], {"status": CallStatus.FAILED}, {"timeout_detected": True}
    )
    assert result.applied is False
    assert result.rows_affected == 0

    fetched = await db.get_call(call.id)
    assert fetched.status == CallStatus.COMPLETED
    assert fetched.metadata.timeout_detected is None


@pytest.mark.asyncio
async def test_conditional_write_wrong_tenant(db, tenant, call_factory):
    call = call_factory(tenant["organization_id"])
    await db.insert_call(call)
    other = await db.create_organization("Other")

    result = await db.update_open_call(call.id, other, {"status": CallStatus.FAILED})
    assert result.applied is False


@pytest.mark.asyncio
async def test_open_and_today_queries(db, tenant, call_factory):
    org = tenant["organization_id"]
    now = utcnow()
    open_call = call_factory(org)
    closed = call_factory(org, end_time=now, status=CallStatus.COMPLETED)
    yesterday = call_factory(org, start_time=now - timedelta(days=2), created_at=now - timedelta(days=2))
    for c in (open_call, closed, yesterday):
        await db.insert_call(c)

    open_ids = {c.id for c in await db.list_open_calls(org)}
    assert open_ids == {open_call.id, yesterday.id}

    since_ids = {c.id for c in await db.list_calls_since(org, now - timedelta(hours=1))}
    assert since_ids == {open_call.id, closed.id}

    old = await db.list_open_calls_created_before(now - timedelta(days=1))
    assert [c.id for c in old] == [yesterday.id]


@pytest.mark.asyncio
async def test_writes_publish_change_events(db, tenant, call_factory):
    received: list[ChangeEvent] = []

    async def handler(event):
        received.append(event)

    await db.feed.subscribe("calls", tenant["organization_id"], handler)

    call = call_factory(tenant["organization_id"])
    await db.insert_call(call)
    await db.update_call(call.id, {"duration": 5}, {"call_status": "ringing"})
    await db.delete_call(call.id)

    assert [e.event_type for e in received] == ["INSERT", "UPDATE", "DELETE"]
    assert received[0].new["id"] == call.id
    assert received[1].new["metadata"]["call_status"] == "ringing"
    assert received[1].old["metadata"]["call_status"] == "initiated"
    assert received[2].old["id"] == call.id
    assert received[2].new == {}


@pytest.mark.asyncio
async def test_change_events_filtered_by_tenant(db, tenant, call_factory):
    received = []

    async def handler(event):
        received.append(event)

    other = await db.create_organization("Other")
    await db.feed.subscribe("calls", other, handler)
    await db.insert_call(call_factory(tenant["organization_id"]))
    assert received == []


@pytest.mark.asyncio
async def test_campaign_attempt(db, tenant):
    org = tenant["organization_id"]
    contact = await db.add_contact(org, "Bob Contact", "+14155551234")
    call_list = await db.add_call_list(org, "Spring")
    await db.add_call_list_contact(call_list, contact)

    assert await db.record_campaign_attempt(call_list, contact, utcnow()) is True
    assert await db.record_campaign_attempt(call_list, contact, utcnow()) is True
    row = await db.get_call_list_contact(call_list, contact)
    assert row["total_attempts"] == 2
    assert row["status"] == "in_progress"

    assert await db.record_campaign_attempt(call_list, "missing", utcnow()) is False


@pytest.mark.asyncio
async def test_usage_period_lookup(db, tenant):
    org = tenant["organization_id"]
    usage = await db.get_usage(org, "call_minutes", utcnow())
    assert usage["used_amount"] == 10
    assert usage["tier_included"] == 100

    assert await db.get_usage(org, "call_minutes", utcnow() + timedelta(days=60)) is None


@pytest.mark.asyncio
async def test_member_lookup(db, tenant):
    member = await db.get_member_for_user(tenant["user_id"])
    assert member["id"] == tenant["member_id"]
    assert await db.get_member_for_user("nobody") is None
    assert await db.get_primary_outbound_number(tenant["organization_id"]) == "+15550001111"
