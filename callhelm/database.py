"""
SQLite-backed persistence layer using aiosqlite.
Handles tenants, members, contacts, campaign progress, usage and call rows.

Every write to ``calls`` is published on the in-process change feed so the
call board can follow it the same way it follows PostgreSQL notifications.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite
import structlog

from callhelm.models import Call, ConditionalWrite, utcnow
from callhelm.realtime import ChangeEvent, InProcessChangeFeed

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS organizations (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    subscription_tier TEXT DEFAULT 'starter',
    created_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS organization_members (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL REFERENCES organizations(id),
    user_id             TEXT NOT NULL,
    full_name           TEXT DEFAULT '',
    email               TEXT DEFAULT '',
    role                TEXT DEFAULT 'agent',
    is_active           INTEGER DEFAULT 1,
    presence            TEXT,
    agent_endpoint      TEXT,
    agent_endpoint_type TEXT,
    threecx_extension   TEXT,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS phone_numbers (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    number          TEXT NOT NULL,
    is_primary      INTEGER DEFAULT 0,
    status          TEXT DEFAULT 'active',
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contacts (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    full_name       TEXT DEFAULT '',
    phone_number    TEXT DEFAULT '',
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS call_lists (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name            TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS call_list_contacts (
    id              TEXT PRIMARY KEY,
    call_list_id    TEXT NOT NULL REFERENCES call_lists(id),
    contact_id      TEXT NOT NULL REFERENCES contacts(id),
    status          TEXT DEFAULT 'pending',
    total_attempts  INTEGER DEFAULT 0,
    last_attempt_at TEXT,
    UNIQUE(call_list_id, contact_id)
);

CREATE TABLE IF NOT EXISTS calls (
    id                    TEXT PRIMARY KEY,
    organization_id       TEXT NOT NULL REFERENCES organizations(id),
    external_id           TEXT,
    direction             TEXT DEFAULT 'outbound',
    caller_number         TEXT DEFAULT '',
    called_number         TEXT DEFAULT '',
    contact_id            TEXT,
    call_list_id          TEXT,
    member_id             TEXT,
    status                TEXT DEFAULT 'initiated',
    start_time            TEXT NOT NULL,
    end_time              TEXT,
    duration              INTEGER,
    bridge_status         TEXT,
    agent_endpoint        TEXT,
    agent_endpoint_type   TEXT,
    agent_call_control_id TEXT,
    provider              TEXT,
    webhook_last_received_at TEXT,
    metadata              TEXT DEFAULT '{}',
    created_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_tracking (
    id                   TEXT PRIMARY KEY,
    organization_id      TEXT NOT NULL REFERENCES organizations(id),
    resource_type        TEXT NOT NULL,
    used_amount          REAL DEFAULT 0,
    tier_included        REAL DEFAULT 0,
    billing_period_start TEXT NOT NULL,
    billing_period_end   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_events (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    resource_type   TEXT NOT NULL,
    amount          REAL DEFAULT 0,
    unit_cost       REAL DEFAULT 0,
    total_cost      REAL DEFAULT 0,
    campaign_id     TEXT,
    agent_id        TEXT,
    contact_id      TEXT,
    call_attempt_id TEXT,
    description     TEXT DEFAULT '',
    metadata        TEXT DEFAULT '{}',
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_org_open ON calls(organization_id, end_time);
CREATE INDEX IF NOT EXISTS idx_calls_org_start ON calls(organization_id, start_time);
CREATE INDEX IF NOT EXISTS idx_members_user ON organization_members(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_org ON usage_tracking(organization_id, resource_type);
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


def iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so stored timestamps compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def _to_db(column: str, value: Any) -> Any:
    if column == "metadata":
        return json.dumps(value if isinstance(value, dict) else value.to_dict())
    if isinstance(value, datetime):
        return iso(value)
    if hasattr(value, "value"):
        return value.value
    return value


class Database:
    """Async SQLite wrapper for the call lifecycle core."""

    def __init__(self, db_path: Path, feed: Optional[InProcessChangeFeed] = None):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self.feed = feed or InProcessChangeFeed()

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        await self.feed.close()
        if self._db:
            await self._db.close()
            self._db = None

    # ── Tenants & members ───────────────────────────────────────

    async def create_organization(self, name: str, subscription_tier: str = "starter") -> str:
        org_id = new_id()
        await self._db.execute(
            "INSERT INTO organizations (id, name, subscription_tier, created_at) VALUES (?, ?, ?, ?)",
            (org_id, name, subscription_tier, iso(utcnow())),
        )
        await self._db.commit()
        return org_id

    async def get_organization(self, organization_id: str) -> Optional[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        )
        row = await cursor.fetchone()
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
        member_id = new_id()
        await self._db.execute(
            """
            INSERT INTO organization_members
                (id, organization_id, user_id, full_name, email, role, is_active,
                 presence, agent_endpoint, agent_endpoint_type, threecx_extension, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                member_id,
                organization_id,
                user_id,
                full_name,
                email,
                role,
                int(is_active),
                presence,
                agent_endpoint,
                agent_endpoint_type,
                threecx_extension,
                iso(utcnow()),
            ),
        )
        await self._db.commit()
        return member_id

    async def get_member_for_user(self, user_id: str) -> Optional[dict]:
        """The user's active membership, if any."""
        cursor = await self._db.execute(
            """
            SELECT * FROM organization_members
            WHERE user_id = ? AND is_active = 1
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_active_members(self, organization_id: str) -> list[dict]:
        cursor = await self._db.execute(
            """
            SELECT * FROM organization_members
            WHERE organization_id = ? AND is_active = 1
            ORDER BY full_name ASC
            """,
            (organization_id,),
        )
        return [dict(r) for r in await cursor.fetchall()]

    async def set_member_presence(self, member_id: str, presence: Optional[str]) -> None:
        await self._db.execute(
            "UPDATE organization_members SET presence = ? WHERE id = ?",
            (presence, member_id),
        )
        await self._db.commit()

    # ── Phone numbers & contacts ────────────────────────────────

    async def add_phone_number(
        self, organization_id: str, number: str, is_primary: bool = True, status: str = "active"
    ) -> str:
        number_id = new_id()
        await self._db.execute(
            """
            INSERT INTO phone_numbers (id, organization_id, number, is_primary, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (number_id, organization_id, number, int(is_primary), status, iso(utcnow())),
        )
        await self._db.commit()
        return number_id

    async def get_primary_outbound_number(self, organization_id: str) -> Optional[str]:
        cursor = await self._db.execute(
            """
            SELECT number FROM phone_numbers
            WHERE organization_id = ? AND is_primary = 1 AND status = 'active'
            LIMIT 1
            """,
            (organization_id,),
        )
        row = await cursor.fetchone()
        return row["number"] if row else None

    async def add_contact(self, organization_id: str, full_name: str, phone_number: str = "") -> str:
        contact_id = new_id()
        await self._db.execute(
            """
            INSERT INTO contacts (id, organization_id, full_name, phone_number, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (contact_id, organization_id, full_name, phone_number, iso(utcnow())),
        )
        await self._db.commit()
        return contact_id

    async def get_contact_names(self, contact_ids: Iterable[str]) -> dict[str, str]:
        ids = sorted({c for c in contact_ids if c})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        cursor = await self._db.execute(
            f"SELECT id, full_name FROM contacts WHERE id IN ({placeholders})", ids
        )
        return {r["id"]: r["full_name"] for r in await cursor.fetchall()}

    # ── Campaigns ───────────────────────────────────────────────

    async def add_call_list(self, organization_id: str, name: str) -> str:
        list_id = new_id()
        await self._db.execute(
            "INSERT INTO call_lists (id, organization_id, name, created_at) VALUES (?, ?, ?, ?)",
            (list_id, organization_id, name, iso(utcnow())),
        )
        await self._db.commit()
        return list_id

    async def add_call_list_contact(self, call_list_id: str, contact_id: str) -> str:
        row_id = new_id()
        await self._db.execute(
            "INSERT INTO call_list_contacts (id, call_list_id, contact_id) VALUES (?, ?, ?)",
            (row_id, call_list_id, contact_id),
        )
        await self._db.commit()
        return row_id

    async def get_call_list_contact(self, call_list_id: str, contact_id: str) -> Optional[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM call_list_contacts WHERE call_list_id = ? AND contact_id = ?",
            (call_list_id, contact_id),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def record_campaign_attempt(
        self, call_list_id: str, contact_id: str, attempted_at: datetime
    ) -> bool:
        """Bump the attempt counter on a campaign contact. False when no such row."""
        cursor = await self._db.execute(
            """
            UPDATE call_list_contacts
            SET status = 'in_progress',
                total_attempts = COALESCE(total_attempts, 0) + 1,
                last_attempt_at = ?
            WHERE call_list_id = ? AND contact_id = ?
            """,
            (iso(attempted_at), call_list_id, contact_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

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
        usage_id = new_id()
        await self._db.execute(
            """
            INSERT INTO usage_tracking
                (id, organization_id, resource_type, used_amount, tier_included,
                 billing_period_start, billing_period_end)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                usage_id,
                organization_id,
                resource_type,
                used_amount,
                tier_included,
                iso(period_start),
                iso(period_end),
            ),
        )
        await self._db.commit()
        return usage_id

    async def get_usage(
        self, organization_id: str, resource_type: str, at: datetime
    ) -> Optional[dict]:
        """The usage counter for the billing period that has not yet ended at ``at``."""
        cursor = await self._db.execute(
            """
            SELECT used_amount, tier_included FROM usage_tracking
            WHERE organization_id = ? AND resource_type = ? AND billing_period_end >= ?
            ORDER BY billing_period_start DESC
            LIMIT 1
            """,
            (organization_id, resource_type, iso(at)),
        )
        row = await cursor.fetchone()
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
        event_id = new_id()
        await self._db.execute(
            """
            INSERT INTO usage_events
                (id, organization_id, resource_type, amount, unit_cost, total_cost,
                 campaign_id, agent_id, contact_id, call_attempt_id, description,
                 metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                organization_id,
                resource_type,
                amount,
                unit_cost,
                amount * unit_cost,
                campaign_id,
                agent_id,
                contact_id,
                call_attempt_id,
                description,
                json.dumps(metadata or {}),
                iso(utcnow()),
            ),
        )
        await self._db.commit()
        return event_id

    async def list_usage_events(self, organization_id: str) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM usage_events WHERE organization_id = ? ORDER BY created_at ASC",
            (organization_id,),
        )
        rows = []
        for r in await cursor.fetchall():
            row = dict(r)
            row["metadata"] = json.loads(row["metadata"] or "{}")
            rows.append(row)
        return rows

    # ── Calls ───────────────────────────────────────────────────

    async def insert_call(self, call: Call) -> Call:
        record = call.to_record()
        columns = ", ".join(_CALL_COLUMNS)
        placeholders = ", ".join("?" for _ in _CALL_COLUMNS)
        await self._db.execute(
            f"INSERT INTO calls ({columns}) VALUES ({placeholders})",
            tuple(_to_db(c, getattr(call, c)) for c in _CALL_COLUMNS),
        )
        await self._db.commit()
        await self._publish("INSERT", call.organization_id, new=record)
        return call

    async def get_call(self, call_id: str, organization_id: Optional[str] = None) -> Optional[Call]:
        if organization_id is None:
            cursor = await self._db.execute("SELECT * FROM calls WHERE id = ?", (call_id,))
        else:
            cursor = await self._db.execute(
                "SELECT * FROM calls WHERE id = ? AND organization_id = ?",
                (call_id, organization_id),
            )
        row = await cursor.fetchone()
        return self._row_to_call(row) if row else None

    async def update_call(
        self,
        call_id: str,
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]] = None,
    ) -> Optional[Call]:
        """
        Unconditional update, as an external writer (the webhook handler) performs it.

        Stamps ``webhook_last_received_at`` unless ``changes`` carries its own.
        """
        changes = {"webhook_last_received_at": utcnow(), **changes}
        async with self._write_lock:
            before = await self.get_call(call_id)
            if before is None:
                return None
            after = await self._apply(before, changes, metadata_patch, only_open=False)
        await self._publish("UPDATE", after.organization_id, new=after.to_record(), old=before.to_record())
        return after

    async def update_open_call(
        self,
        call_id: str,
        organization_id: Optional[str],
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]] = None,
    ) -> ConditionalWrite:
        """
        Apply ``changes`` only while the call is still open (``end_time IS NULL``).

        Metadata is merged with the stored bag. Zero matching rows (missing,
        another tenant's, or already ended) comes back as ``applied=False``.
        """
        async with self._write_lock:
            before = await self.get_call(call_id, organization_id)
            if before is None or not before.is_open:
                return ConditionalWrite(applied=False)
            after = await self._apply(before, changes, metadata_patch, only_open=True)
            if after is None:
                return ConditionalWrite(applied=False)
        await self._publish("UPDATE", after.organization_id, new=after.to_record(), old=before.to_record())
        return ConditionalWrite(applied=True, call=after)

    async def delete_call(self, call_id: str) -> bool:
        async with self._write_lock:
            before = await self.get_call(call_id)
            if before is None:
                return False
            await self._db.execute("DELETE FROM calls WHERE id = ?", (call_id,))
            await self._db.commit()
        await self._publish("DELETE", before.organization_id, old=before.to_record())
        return True

    async def list_open_calls(self, organization_id: str) -> list[Call]:
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE organization_id = ? AND end_time IS NULL
            ORDER BY start_time DESC
            """,
            (organization_id,),
        )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    async def list_calls_since(self, organization_id: str, since: datetime) -> list[Call]:
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE organization_id = ? AND start_time >= ?
            ORDER BY start_time ASC
            """,
            (organization_id, iso(since)),
        )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    async def list_calls_created_since(self, organization_id: str, since: datetime) -> list[Call]:
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE organization_id = ? AND created_at >= ?
            ORDER BY created_at ASC
            """,
            (organization_id, iso(since)),
        )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    async def list_open_calls_created_before(self, cutoff: datetime) -> list[Call]:
        """Open calls across every tenant created before ``cutoff`` (orphan sweep)."""
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE end_time IS NULL AND created_at < ?
            ORDER BY created_at ASC
            """,
            (iso(cutoff),),
        )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    # ── Helpers ─────────────────────────────────────────────────

    async def _apply(
        self,
        before: Call,
        changes: dict[str, Any],
        metadata_patch: Optional[dict[str, Any]],
        only_open: bool,
    ) -> Optional[Call]:
        updates = {k: v for k, v in changes.items() if k in _CALL_COLUMNS and k not in ("id", "metadata")}
        metadata = before.metadata.merge(metadata_patch or {})
        updates["metadata"] = metadata

        assignments = ", ".join(f"{c} = ?" for c in updates)
        sql = f"UPDATE calls SET {assignments} WHERE id = ?"
        if only_open:
            sql += " AND end_time IS NULL"
        params = [_to_db(c, v) for c, v in updates.items()]
        params.append(before.id)

        cursor = await self._db.execute(sql, params)
        await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_call(before.id)

    async def _publish(
        self,
        event_type: str,
        organization_id: str,
        new: Optional[dict] = None,
        old: Optional[dict] = None,
    ) -> None:
        event = ChangeEvent(
            event_type=event_type,
            table="calls",
            organization_id=organization_id,
            new=new,
            old=old,
        )
        log.debug("call_change", event_type=event_type, call_id=(new or old or {}).get("id"))
        await self.feed.publish(event)

    @staticmethod
    def _row_to_call(row) -> Call:
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"] or "{}")
        return Call.model_validate(data)


async def open_store(settings) -> "Database":
    """Connect the configured store: PostgreSQL when ``database_url`` is set, else SQLite."""
    if settings.database_url:
        from callhelm.saas_db import SaaSDatabase

        store = SaaSDatabase(settings.database_url)
    else:
        store = Database(settings.database_path)
    await store.connect()
    return store
