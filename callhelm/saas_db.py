"""
PostgreSQL database layer for multi-tenant deployments.
Uses asyncpg for async database operations.

Same query surface as ``callhelm.database.Database``. Row-level change
notifications come from a ``pg_notify`` trigger on ``calls`` and are
consumed by ``PostgresChangeFeed`` over a dedicated LISTEN connection.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg
import structlog

from callhelm.models import Call, ConditionalWrite, utcnow
from callhelm.realtime import (
    ChangeEvent,
    ChangeSubscription,
    ChannelStatus,
    EventHandler,
    StatusHandler,
)

log = structlog.get_logger(__name__)

NOTIFY_CHANNEL = "calls_changes"

# ── Schema DDL ──────────────────────────────────────────────────
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS organizations (
    id                TEXT PRIMARY KEY,
    name              VARCHAR(255) NOT NULL,
    subscription_tier VARCHAR(30) DEFAULT 'starter',
    created_at        TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS organization_members (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    user_id             VARCHAR(255) NOT NULL,
    full_name           VARCHAR(255) DEFAULT '',
    email               VARCHAR(255) DEFAULT '',
    role                VARCHAR(30) DEFAULT 'agent',
    is_active           BOOLEAN DEFAULT TRUE,
    presence            VARCHAR(20),
    agent_endpoint      TEXT,
    agent_endpoint_type VARCHAR(10),
    threecx_extension   VARCHAR(20),
    created_at          TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS phone_numbers (
    id              TEXT PRIMARY KEY,
    organization_id TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    number          VARCHAR(50) NOT NULL,
    is_primary      BOOLEAN DEFAULT FALSE,
    status          VARCHAR(20) DEFAULT 'active',
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS contacts (
    id              TEXT PRIMARY KEY,
    organization_id TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    full_name       VARCHAR(255) DEFAULT '',
    phone_number    VARCHAR(50) DEFAULT '',
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS call_lists (
    id              TEXT PRIMARY KEY,
    organization_id TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    name            VARCHAR(255) NOT NULL,
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS call_list_contacts (
    id              TEXT PRIMARY KEY,
    call_list_id    TEXT REFERENCES call_lists(id) ON DELETE CASCADE,
    contact_id      TEXT REFERENCES contacts(id) ON DELETE CASCADE,
    status          VARCHAR(20) DEFAULT 'pending',
    total_attempts  INT DEFAULT 0,
    last_attempt_at TIMESTAMPTZ,
    UNIQUE(call_list_id, contact_id)
);

CREATE TABLE IF NOT EXISTS calls (
    id                    TEXT PRIMARY KEY,
    organization_id       TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    external_id           VARCHAR(255),
    direction             VARCHAR(10) DEFAULT 'outbound',
    caller_number         TEXT DEFAULT '',
    called_number         TEXT DEFAULT '',
    contact_id            TEXT,
    call_list_id          TEXT,
    member_id             TEXT,
    status                VARCHAR(20) DEFAULT 'initiated',
    start_time            TIMESTAMPTZ NOT NULL,
    end_time              TIMESTAMPTZ,
    duration              INT,
    bridge_status         VARCHAR(20),
    agent_endpoint        TEXT,
    agent_endpoint_type   VARCHAR(10),
    agent_call_control_id VARCHAR(255),
    provider              VARCHAR(20),
    webhook_last_received_at TIMESTAMPTZ,
    metadata              JSONB DEFAULT '{}'::jsonb,
    created_at            TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS usage_tracking (
    id                   TEXT PRIMARY KEY,
    organization_id      TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    resource_type        VARCHAR(30) NOT NULL,
    used_amount          NUMERIC DEFAULT 0,
    tier_included        NUMERIC DEFAULT 0,
    billing_period_start TIMESTAMPTZ NOT NULL,
    billing_period_end   TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_events (
    id              TEXT PRIMARY KEY,
    organization_id TEXT REFERENCES organizations(id) ON DELETE CASCADE,
    resource_type   VARCHAR(30) NOT NULL,
    amount          NUMERIC DEFAULT 0,
    unit_cost       NUMERIC DEFAULT 0,
    total_cost      NUMERIC DEFAULT 0,
    campaign_id     TEXT,
    agent_id        TEXT,
    contact_id      TEXT,
    call_attempt_id TEXT,
    description     TEXT DEFAULT '',
    metadata        JSONB DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_calls_org_open ON calls(organization_id) WHERE end_time IS NULL;
CREATE INDEX IF NOT EXISTS idx_calls_org_start ON calls(organization_id, start_time);
CREATE INDEX IF NOT EXISTS idx_members_user ON organization_members(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_org ON usage_tracking(organization_id, resource_type);

CREATE OR REPLACE FUNCTION notify_calls_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        'calls_changes',
        json_build_object(
            'eventType', TG_OP,
            'table', TG_TABLE_NAME,
            'organization_id', COALESCE(NEW.organization_id, OLD.organization_id),
            'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
            'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS calls_notify ON calls;
CREATE TRIGGER calls_notify
    AFTER INSERT OR UPDATE OR DELETE ON calls
    FOR EACH ROW EXECUTE FUNCTION notify_calls_change();
"""

_CALL_COLUMNS = (
    "id",
    "organization_id",
    "external_id",
    "direction",
    "caller_number",
    "called_number",
    "contact_id",
    "call_list_id",
    "member_id",
    "status",
    "start_time",
    "end_time",
    "duration",
    "bridge_status",
    "agent_endpoint",
    "agent_endpoint_type",
    "agent_call_control_id",
    "provider",
    "webhook_last_received_at",
    "metadata",
    "created_at",
)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


def _to_pg(column: str, value: Any) -> Any:
    if column == "metadata":
        return value if isinstance(value, dict) else value.to_dict()
    if hasattr(value, "value"):
        return value.value
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


class SaaSDatabase:
    """Multi-tenant PostgreSQL database layer."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._pool: Optional[asyncpg.Pool] = None
        self.feed = PostgresChangeFeed(database_url)

    async def connect(self) -> None:
        """Create connection pool and initialise schema."""
        self._pool = await asyncpg.create_pool(
            self.database_url,
            min_size=2,
            max_size=10,
            init=_init_connection,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        log.info("database_connected", url=self.database_url[:30] + "...")

    async def close(self) -> None:
        await self.feed.close()
        if self._pool:
            await self._pool.close()
            log.info("database_closed")

    # ── Tenants & members ───────────────────────────────────────

    async def create_organization(self, name: str, subscription_tier: str = "starter") -> str:
        org_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO organizations (id, name, subscription_tier) VALUES ($1, $2, $3)",
                org_id, name, subscription_tier,
            )
        return org_id

    async def get_organization(self, organization_id: str) -> Optional[dict]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM organizations WHERE id = $1", organization_id
            )
            return dict(row) if row else None

    async def add_member(
        self,
        organization_id: str,
        user_id: str,
        full_name: str = "",
        email: str = "",
        role: str = "agent",
        is_active: bool = True,
        presence: Optional[str] = None,
        agent_endpoint: Optional[str] = None,
        agent_endpoint_type: Optional[str] = None,
        threecx_extension: Optional[str] = None,
    ) -> str:
        member_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO organization_members
                   (id, organization_id, user_id, full_name, email, role, is_active,
                    presence, agent_endpoint, agent_endpoint_type, threecx_extension)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)""",
                member_id, organization_id, user_id, full_name, email, role, is_active,
                presence, agent_endpoint, agent_endpoint_type, threecx_extension,
            )
        return member_id

    async def get_member_for_user(self, user_id: str) -> Optional[dict]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT * FROM organization_members
                   WHERE user_id = $1 AND is_active
                   ORDER BY created_at ASC LIMIT 1""",
                user_id,
            )
            return dict(row) if row else None

    async def list_active_members(self, organization_id: str) -> list[dict]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM organization_members
                   WHERE organization_id = $1 AND is_active
                   ORDER BY full_name ASC""",
                organization_id,
            )
            return [dict(r) for r in rows]

    async def set_member_presence(self, member_id: str, presence: Optional[str]) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE organization_members SET presence = $1 WHERE id = $2",
                presence, member_id,
            )

    # ── Phone numbers & contacts ────────────────────────────────

    async def add_phone_number(
        self, organization_id: str, number: str, is_primary: bool = True, status: str = "active"
    ) -> str:
        number_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO phone_numbers (id, organization_id, number, is_primary, status)
                   VALUES ($1, $2, $3, $4, $5)""",
                number_id, organization_id, number, is_primary, status,
            )
        return number_id

    async def get_primary_outbound_number(self, organization_id: str) -> Optional[str]:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                """SELECT number FROM phone_numbers
                   WHERE organization_id = $1 AND is_primary AND status = 'active'
                   LIMIT 1""",
                organization_id,
            )

    async def add_contact(self, organization_id: str, full_name: str, phone_number: str = "") -> str:
        contact_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO contacts (id, organization_id, full_name, phone_number)
                   VALUES ($1, $2, $3, $4)""",
                contact_id, organization_id, full_name, phone_number,
            )
        return contact_id

    async def get_contact_names(self, contact_ids: Iterable[str]) -> dict[str, str]:
        ids = sorted({c for c in contact_ids if c})
        if not ids:
            return {}
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, full_name FROM contacts WHERE id = ANY($1::text[])", ids
            )
            return {r["id"]: r["full_name"] for r in rows}

    # ── Campaigns ───────────────────────────────────────────────

    async def add_call_list(self, organization_id: str, name: str) -> str:
        list_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO call_lists (id, organization_id, name) VALUES ($1, $2, $3)",
                list_id, organization_id, name,
            )
        return list_id

    async def add_call_list_contact(self, call_list_id: str, contact_id: str) -> str:
        row_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO call_list_contacts (id, call_list_id, contact_id) VALUES ($1, $2, $3)",
                row_id, call_list_id, contact_id,
            )
        return row_id

    async def get_call_list_contact(self, call_list_id: str, contact_id: str) -> Optional[dict]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM call_list_contacts WHERE call_list_id = $1 AND contact_id = $2",
                call_list_id, contact_id,
            )
            return dict(row) if row else None

    async def record_campaign_attempt(
        self, call_list_id: str, contact_id: str, attempted_at: datetime
    ) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """UPDATE call_list_contacts
                   SET status = 'in_progress',
                       total_attempts = COALESCE(total_attempts, 0) + 1,
                       last_attempt_at = $1
                   WHERE call_list_id = $2 AND contact_id = $3""",
                attempted_at, call_list_id, contact_id,
            )
            return result != "UPDATE 0"

    # ── Usage ───────────────────────────────────────────────────

    async def set_usage(
        self,
        organization_id: str,
        resource_type: str,
        used_amount: float,
        tier_included: float,
        period_start: datetime,
        period_end: datetime,
    ) -> str:
        usage_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO usage_tracking
                   (id, organization_id, resource_type, used_amount, tier_included,
                    billing_period_start, billing_period_end)
                   VALUES ($1, $2, $3, $4, $5, $6, $7)""",
                usage_id, organization_id, resource_type, used_amount, tier_included,
                period_start, period_end,
            )
        return usage_id

    async def get_usage(
        self, organization_id: str, resource_type: str, at: datetime
    ) -> Optional[dict]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT used_amount::float AS used_amount, tier_included::float AS tier_included
                   FROM usage_tracking
                   WHERE organization_id = $1 AND resource_type = $2 AND billing_period_end >= $3
                   ORDER BY billing_period_start DESC LIMIT 1""",
                organization_id, resource_type, at,
            )
            return dict(row) if row else None

    async def log_usage_event(
        self,
        organization_id: str,
        resource_type: str,
        amount: float,
        unit_cost: float,
        description: str = "",
        campaign_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        call_attempt_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        event_id = _new_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO usage_events
                   (id, organization_id, resource_type, amount, unit_cost, total_cost,
                    campaign_id, agent_id, contact_id, call_attempt_id, description, metadata)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)""",
                event_id, organization_id, resource_type, amount, unit_cost, amount * unit_cost,
                campaign_id, agent_id, contact_id, call_attempt_id, description, metadata or {},
            )
        return event_id

    async def list_usage_events(self, organization_id: str) -> list[dict]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM usage_events WHERE organization_id = $1 ORDER BY created_at ASC",
                organization_id,
            )
            return [dict(r) for r in rows]

    # ── Calls ───────────────────────────────────────────────────

    async def insert_call(self, call: Call) -> Call:
        columns = ", ".join(_CALL_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_CALL_COLUMNS) + 1))
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO calls ({columns}) VALUES ({placeholders}) RETURNING *",
                *(_to_pg(c, getattr(call, c)) for c in _CALL_COLUMNS),
            )
        return Call.model_validate(dict(row))

    async def get_call(self, call_id: str, organization_id: Optional[str] = None) -> Optional[Call]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT * FROM calls
                   WHERE id = $1 AND ($2::text IS NULL OR organization_id = $2)""",
                call_id, organization_id,
            )
            return Call.model_validate(dict(row)) if row else None

    async def update_call(
        self,
        call_id: str,
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]] = None,
    ) -> Optional[Call]:
        changes = {"webhook_last_received_at": utcnow(), **changes}
        row = await self._update(call_id, None, changes, metadata_patch, only_open=False)
        return Call.model_validate(row) if row else None

    async def update_open_call(
        self,
        call_id: str,
        organization_id: Optional[str],
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]] = None,
    ) -> ConditionalWrite:
        """Single-statement ``... WHERE end_time IS NULL RETURNING *``; metadata merged with ``||``."""
        row = await self._update(call_id, organization_id, changes, metadata_patch, only_open=True)
        if row is None:
            return ConditionalWrite(applied=False)
        return ConditionalWrite(applied=True, call=Call.model_validate(row))

    async def delete_call(self, call_id: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute("DELETE FROM calls WHERE id = $1", call_id)
            return result != "DELETE 0"

    async def list_open_calls(self, organization_id: str) -> list[Call]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM calls
                   WHERE organization_id = $1 AND end_time IS NULL
                   ORDER BY start_time DESC""",
                organization_id,
            )
            return [Call.model_validate(dict(r)) for r in rows]

    async def list_calls_since(self, organization_id: str, since: datetime) -> list[Call]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM calls
                   WHERE organization_id = $1 AND start_time >= $2
                   ORDER BY start_time ASC""",
                organization_id, since,
            )
            return [Call.model_validate(dict(r)) for r in rows]

    async def list_calls_created_since(self, organization_id: str, since: datetime) -> list[Call]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM calls
                   WHERE organization_id = $1 AND created_at >= $2
                   ORDER BY created_at ASC""",
                organization_id, since,
            )
            return [Call.model_validate(dict(r)) for r in rows]

    async def list_open_calls_created_before(self, cutoff: datetime) -> list[Call]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM calls
                   WHERE end_time IS NULL AND created_at < $1
                   ORDER BY created_at ASC""",
                cutoff,
            )
            return [Call.model_validate(dict(r)) for r in rows]

    async def _update(
        self,
        call_id: str,
        organization_id: Optional[str],
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]],
        only_open: bool,
    ) -> Optional[dict]:
        updates = {k: v for k, v in changes.items() if k in _CALL_COLUMNS and k not in ("id", "metadata")}
        params: list[Any] = [call_id, organization_id]
        assignments = []
        for column, value in updates.items():
            params.append(_to_pg(column, value))
            assignments.append(f"{column} = ${len(params)}")
        params.append(metadata_patch or {})
        assignments.append(f"metadata = COALESCE(metadata, '{{}}'::jsonb) || ${len(params)}::jsonb")

        sql = (
            f"UPDATE calls SET {', '.join(assignments)} "
            "WHERE id = $1 AND ($2::text IS NULL OR organization_id = $2)"
        )
        if only_open:
            sql += " AND end_time IS NULL"
        sql += " RETURNING *"

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(sql, *params)
            return dict(row) if row else None


# ── Change feed (LISTEN / NOTIFY) ───────────────────────────────


class PostgresChangeFeed:
    """
    Delivers ``calls`` row changes from the ``notify_calls_change`` trigger.

    Holds one dedicated LISTEN connection. When it drops, every subscription
    goes to CHANNEL_ERROR, and the feed reconnects with exponential backoff
    before reporting CONNECTING and then SUBSCRIBED again. Notifications are
    queued and dispatched in arrival order.
    """

    def __init__(self, database_url: str, initial_backoff: float = 1.0, max_backoff: float = 30.0):
        self.database_url = database_url
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._subscriptions: list[ChangeSubscription] = []
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._conn: Optional[asyncpg.Connection] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._connected = False
        self._closing = False

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
        if self._listen_task is None:
            self._closing = False
            self._listen_task = asyncio.create_task(self._listen_loop())
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        elif self._connected:
            sub.set_status(ChannelStatus.SUBSCRIBED)
        return sub

    async def unsubscribe(self, sub: ChangeSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        sub.set_status(ChannelStatus.CLOSED)
        if not self._subscriptions:
            await self._stop()

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.set_status(ChannelStatus.CLOSED)
        self._subscriptions.clear()
        await self._stop()

    async def _stop(self) -> None:
        self._closing = True
        for task in (self._listen_task, self._dispatch_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._listen_task = None
        self._dispatch_task = None
        await self._close_conn()

    async def _close_conn(self) -> None:
        self._connected = False
        if self._conn is not None and not self._conn.is_closed():
            await self._conn.close()
        self._conn = None

    def _set_all(self, status: ChannelStatus) -> None:
        for sub in list(self._subscriptions):
            sub.set_status(status)

    async def _listen_loop(self) -> None:
        backoff = self.initial_backoff
        while not self._closing:
            lost = asyncio.Event()
            try:
                self._conn = await asyncpg.connect(self.database_url)
                self._conn.add_termination_listener(lambda _conn: lost.set())
                await self._conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
                self._connected = True
                backoff = self.initial_backoff
                self._set_all(ChannelStatus.SUBSCRIBED)
                log.info("change_feed_listening", channel=NOTIFY_CHANNEL)
                await lost.wait()
                log.warning("change_feed_connection_lost", channel=NOTIFY_CHANNEL)
                self._set_all(ChannelStatus.CHANNEL_ERROR)
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                log.warning("change_feed_connect_failed", error=str(e), retry_in=backoff)
                self._set_all(ChannelStatus.CHANNEL_ERROR)
            finally:
                await self._close_conn()

            if self._closing:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)
            self._set_all(ChannelStatus.CONNECTING)

    def _on_notify(self, _conn: Any, _pid: int, _channel: str, payload: str) -> None:
        try:
            event = ChangeEvent.model_validate_json(payload)
        except ValueError as e:
            log.error("change_payload_invalid", error=str(e))
            return
        self._queue.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            for sub in list(self._subscriptions):
                if sub.matches(event):
                    await sub.deliver(event)
