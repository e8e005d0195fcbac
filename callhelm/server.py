"""
HTTP API for the call lifecycle core.

Routes:
  Calls:    /api/calls/initiate, /api/calls/{id}/status, /api/calls/{id}/timeout,
            /api/calls/{id}/end, /api/calls/health-check,
            /api/calls/cleanup-orphaned (cron)
  Board:    /api/call-board
  Auth:     /auth/me, /auth/logout

Usage:
    uvicorn callhelm.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import hmac
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse

from callhelm.auth import AuthManager
from callhelm.config import Settings, get_settings
from callhelm.dashboard import CallBoardRegistry
from callhelm.database import Database, open_store
from callhelm.errors import AuthenticationError, CallHelmError, OrganizationNotFoundError
from callhelm.initiation import CallInitiator
from callhelm.lifecycle import CallLifecycle
from callhelm.models import InitiateCallRequest, TimeoutRequest, utcnow
from callhelm.telephony import ProviderPool

log = structlog.get_logger(__name__)


class Services:
    """Everything a request handler needs, built once per process."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.db = db
        self.auth = AuthManager(jwt_secret=settings.jwt_secret)
        self.providers = ProviderPool(settings, transport=transport)
        self.initiator = CallInitiator(db, settings, self.providers)
        self.lifecycle = CallLifecycle(db, settings, self.providers)
        self.boards = CallBoardRegistry(db, settings)

    async def close(self) -> None:
        await self.boards.stop_all()
        await self.providers.close()

    async def organization_for(self, user_id: str) -> str:
        member = await self.db.get_member_for_user(user_id)
        if not member or not member.get("organization_id"):
            raise OrganizationNotFoundError()
        return member["organization_id"]


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI app with all routes.

    With ``services`` given the app uses them as-is (tests); otherwise the
    lifespan connects the configured store and builds them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        cfg = settings or get_settings()
        cfg.ensure_dirs()
        db = await open_store(cfg)
        app.state.services = Services(cfg, db)
        log.info("server_started", provider=cfg.telephony_provider, postgres=bool(cfg.database_url))
        yield
        await app.state.services.close()
        await db.close()
        log.info("server_stopped")

    app = FastAPI(title="Call-Helm", version="1.0.0", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    def _services(request: Request) -> Services:
        return request.app.state.services

    @app.exception_handler(CallHelmError)
    async def callhelm_error(request: Request, exc: CallHelmError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── Health check ──────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok", "version": "1.0.0"}

    # ═══════════════════════════════════════════════════════════
    #  Auth
    # ═══════════════════════════════════════════════════════════
    @app.get("/auth/me")
    async def auth_me(request: Request):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        member = await svc.db.get_member_for_user(user_id)
        return {
            "userId": user_id,
            "organizationId": member["organization_id"] if member else None,
            "memberId": member["id"] if member else None,
            "name": member.get("full_name") if member else None,
        }

    @app.post("/auth/logout")
    async def auth_logout(request: Request, response: Response):
        _services(request).auth.clear_session_cookie(response)
        return {"success": True}

    # ═══════════════════════════════════════════════════════════
    #  Calls
    # ═══════════════════════════════════════════════════════════
    @app.post("/api/calls/initiate")
    async def initiate_call(request: Request, body: InitiateCallRequest):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        result = await svc.initiator.initiate(user_id, body)
        return result.model_dump(mode="json", by_alias=True)

    # Registered before the {call_id} routes so the literal path wins
    @app.post("/api/calls/cleanup-orphaned")
    async def cleanup_orphaned(
        request: Request,
        x_cron_secret: Optional[str] = Header(None, alias="x-cron-secret"),
    ):
        svc = _services(request)
        secret = svc.settings.cron_secret
        if not secret or not hmac.compare_digest(secret, x_cron_secret or ""):
            log.warning("cron_secret_mismatch")
            raise AuthenticationError("Unauthorized")
        now = utcnow()
        cleaned = await svc.lifecycle.cleanup_orphaned(now)
        return {
            "success": True,
            "message": "Orphaned calls cleanup completed",
            "cleanedCount": cleaned,
            "timestamp": now.isoformat(),
        }

    @app.get("/api/calls/health-check")
    async def calls_health_check(request: Request):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        organization_id = await svc.organization_for(user_id)
        return await svc.lifecycle.health_check(organization_id)

    @app.get("/api/calls/{call_id}/status")
    async def call_status(request: Request, call_id: str):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        organization_id = await svc.organization_for(user_id)
        return await svc.lifecycle.get_status(organization_id, call_id)

    @app.post("/api/calls/{call_id}/timeout")
    async def call_timeout(request: Request, call_id: str, body: TimeoutRequest):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        organization_id = await svc.organization_for(user_id)
        await svc.lifecycle.mark_timed_out(organization_id, call_id, body)
        return {
            "success": True,
            "callId": call_id,
            "timeoutStage": body.timeout_stage,
            "message": "Call marked as timed out",
        }

    @app.post("/api/calls/{call_id}/end")
    async def end_call(request: Request, call_id: str):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        organization_id = await svc.organization_for(user_id)
        await svc.lifecycle.end_call(organization_id, call_id, user_id)
        return {"success": True, "callId": call_id}

    # ═══════════════════════════════════════════════════════════
    #  Call board
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/call-board")
    async def call_board(request: Request, refresh: bool = False):
        svc = _services(request)
        user_id = svc.auth.require_auth(request)
        organization_id = await svc.organization_for(user_id)
        session = await svc.boards.get(organization_id)
        if refresh:
            await session.reload()
        return session.snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from callhelm.logging_config import setup_logging

    _settings = get_settings()
    setup_logging(_settings.log_dir, json_logs=True)
    uvicorn.run(
        "callhelm.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
        log_level="info",
    )
