"""
CLI interface for Call-Helm.
Provides commands for seeding a tenant, inspecting the call board,
running orphan cleanup, issuing API tokens and running the server.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from callhelm.config import get_settings
from callhelm.logging_config import setup_logging
from callhelm.models import AgentState
from callhelm.phone_utils import format_for_display

app = typer.Typer(
    name="callhelm",
    help="Outbound call lifecycle and live call board",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


@app.command()
def init_db(
    organization: Optional[str] = typer.Option(None, help="Seed an organization with this name"),
    user_id: str = typer.Option("admin", help="User id of the seeded member"),
    member_name: str = typer.Option("Admin", help="Display name of the seeded member"),
    outbound_number: Optional[str] = typer.Option(None, help="Primary outbound caller ID"),
    tier: str = typer.Option("starter", help="Subscription tier"),
    included_minutes: float = typer.Option(100.0, help="Included call minutes this month"),
):
    """Create the schema, optionally seeding one tenant."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callhelm.database import open_store
        from callhelm.initiation import CALL_MINUTES
        from callhelm.models import utcnow

        db = await open_store(settings)
        try:
            console.print("[green]✓ Schema ready[/green]")
            if not organization:
                return
            org_id = await db.create_organization(organization, subscription_tier=tier)
            member_id = await db.add_member(org_id, user_id, full_name=member_name, role="admin")
            if outbound_number:
                await db.add_phone_number(org_id, outbound_number)
            now = utcnow()
            await db.set_usage(
                org_id, CALL_MINUTES, 0, included_minutes, now - timedelta(days=1), now + timedelta(days=30)
            )
            console.print(f"  Organization:  {org_id}")
            console.print(f"  Member:        {member_id} (user {user_id})")
            console.print(f"  Outbound:      {outbound_number or '-'}")
        finally:
            await db.close()

    _run(_do())


def _board_tables(snapshot: dict) -> list[Table]:
    stats = snapshot["stats"]
    summary = Table(title=f"Call Board · {snapshot['organizationId']}")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="green")
    summary.add_row("Active", str(stats["active_calls"]))
    summary.add_row("Total today", str(stats["total_calls"]))
    summary.add_row("Completed", str(stats["completed_calls"]))
    summary.add_row("Failed", str(stats["failed_calls"]))
    summary.add_row("Avg duration (s)", f"{stats['avg_duration']:.1f}")
    summary.add_row("Success rate", f"{stats['success_rate']}%")

    calls = Table(title="Active Calls")
    for col in ("Agent", "Contact", "Number", "Status", "Duration"):
        calls.add_column(col)
    for c in snapshot["activeCalls"]:
        calls.add_row(
            c["agent_name"],
            c["contact_name"],
            format_for_display(c["phone_number"]),
            c["status"],
            f"{c['duration_seconds']}s",
        )

    agents = Table(title="Agents")
    for col in ("Agent", "Status", "Calls", "Completed", "Avg (s)"):
        agents.add_column(col)
    for a in snapshot["agents"]:
        agents.add_row(
            a["name"], a["status"], str(a["calls_today"]), str(a["completed_calls"]), f"{a['avg_call_time']:.1f}"
        )
    return [summary, calls, agents]


@app.command()
def board(
    organization_id: str = typer.Argument(..., help="Organization to show"),
    watch: bool = typer.Option(False, help="Keep the board live and redraw periodically"),
    interval: float = typer.Option(2.0, help="Redraw interval in seconds (with --watch)"),
):
    """Show the live call board for one organization."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False, level="WARNING")

    async def _do():
        from callhelm.dashboard import CallBoardSession
        from callhelm.database import open_store

        db = await open_store(settings)
        session = CallBoardSession(db, organization_id, settings)
        await session.start()
        try:
            while True:
                if watch:
                    console.clear()
                for table in _board_tables(session.snapshot()):
                    console.print(table)
                if not watch:
                    break
                await asyncio.sleep(interval)
        finally:
            await session.stop()
            await db.close()

    try:
        _run(_do())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@app.command()
def presence(
    member_id: str = typer.Argument(..., help="Member whose presence to set"),
    state: AgentState = typer.Argument(..., help="Presence shown while the agent has no call"),
):
    """Set an agent's idle presence on the call board."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False, level="WARNING")

    async def _do():
        from callhelm.database import open_store

        db = await open_store(settings)
        try:
            await db.set_member_presence(member_id, state.value)
            console.print(f"[green]✓ {member_id} is now {state.value}[/green]")
        finally:
            await db.close()

    _run(_do())


@app.command()
def cleanup():
    """Close calls stuck in initiated/ringing (same as the cron endpoint)."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from callhelm.database import open_store
        from callhelm.lifecycle import CallLifecycle
        from callhelm.telephony import ProviderPool

        db = await open_store(settings)
        providers = ProviderPool(settings)
        try:
            cleaned = await CallLifecycle(db, settings, providers).cleanup_orphaned()
            console.print(f"\n[green]✓ Cleanup complete[/green]  cleaned: {cleaned}")
        finally:
            await providers.close()
            await db.close()

    _run(_do())


@app.command()
def token(
    user_id: str = typer.Argument(..., help="User id to issue the session token for"),
    email: str = typer.Option("", help="Email claim"),
):
    """Print a session token for API clients (Authorization: Bearer ...)."""
    from callhelm.auth import AuthManager

    settings = get_settings()
    console.print(AuthManager(settings.jwt_secret).create_session_token(user_id, email))


@app.command()
def serve():
    """Run the HTTP API server."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        import uvicorn
        from callhelm.server import create_app

        config = uvicorn.Config(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        console.print(f"\n[green]Call-Helm API running on {settings.host}:{settings.port}[/green]")
        await server.serve()

    _run(_do())


if __name__ == "__main__":
    app()
