"""Shared fixtures: a throwaway SQLite store and one seeded tenant."""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from callhelm.config import Settings
from callhelm.database import Database
from callhelm.initiation import CALL_MINUTES
from callhelm.models import Call, CallStatus, utcnow
from callhelm.telephony import ProviderPool

OUTBOUND_NUMBER = "+15550001111"
USER_ID = "user-1"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        telephony_provider="mock",
        database_path=tmp_path / "test.db",
        log_dir=tmp_path / "logs",
        jwt_secret="test-secret",
        cron_secret="cron-secret",
        app_url="https://callhelm.test",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings.database_path)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def providers(settings):
    return ProviderPool(settings)


@pytest_asyncio.fixture
async def tenant(db):
    """One organization with an agent, a primary number and minutes left."""
    org_id = await db.create_organization("Acme", subscription_tier="starter")
    member_id = await db.add_member(
        org_id, USER_ID, full_name="Alice Agent", email="alice@example.com", role="agent"
    )
    await db.add_phone_number(org_id, OUTBOUND_NUMBER)
    now = utcnow()
    await db.set_usage(org_id, CALL_MINUTES, 10, 100, now - timedelta(days=1), now + timedelta(days=29))
    return {"organization_id": org_id, "member_id": member_id, "user_id": USER_ID}


def make_call(organization_id: str, **overrides) -> Call:
    now = utcnow()
    data = dict(
        id=str(uuid.uuid4()),
        organization_id=organization_id,
        called_number="+14155551234",
        caller_number=OUTBOUND_NUMBER,
        status=CallStatus.ANSWERED,
        start_time=now,
        created_at=now,
        metadata={"initial_status": "initiated", "call_status": "initiated"},
    )
    data.update(overrides)
    return Call(**data)


@pytest.fixture
def call_factory():
    return make_call
