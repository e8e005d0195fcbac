"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Public URL (webhook callbacks) ──────────────────────────
    app_url: str = Field(default="http://localhost:8000")

    # ── Telephony ───────────────────────────────────────────────
    telephony_provider: str = Field(
        default="telnyx", description="Deployment vendor: telnyx | twilio | signalwire"
    )
    recording_enabled: bool = Field(default=True)
    answering_machine_detection: bool = Field(default=False)

    telnyx_api_key: str = Field(default="")
    telnyx_connection_id: str = Field(default="")
    telnyx_base_url: str = Field(default="https://api.telnyx.com/v2")

    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_base_url: str = Field(default="https://api.twilio.com/2010-04-01")

    signalwire_project_id: str = Field(default="")
    signalwire_api_token: str = Field(default="")
    signalwire_space_url: str = Field(default="", description="e.g. example.signalwire.com")

    # 3CX extensions are dialled as sip:<ext>@<domain>
    threecx_sip_domain: str = Field(default="")

    # ── Usage / billing ─────────────────────────────────────────
    overage_unit_cost: float = Field(default=0.02, ge=0)

    # ── Auth ────────────────────────────────────────────────────
    jwt_secret: str = Field(default="change_me")
    cron_secret: str = Field(default="")

    # ── Storage ─────────────────────────────────────────────────
    database_url: str = Field(default="", description="PostgreSQL DSN (blank = SQLite)")
    database_path: Path = Field(default=Path("data/callhelm.db"))

    # ── Call board ──────────────────────────────────────────────
    board_reconcile_interval_seconds: float = Field(default=10.0, gt=0)
    board_staleness_threshold_seconds: float = Field(default=30.0, gt=0)
    board_tick_seconds: float = Field(default=1.0, gt=0)
    board_timezone: str = Field(default="UTC")

    # ── Orphan cleanup ──────────────────────────────────────────
    stuck_initiated_minutes: int = Field(default=2, ge=1)
    stuck_ringing_minutes: int = Field(default=3, ge=1)

    # ── Paths / server ──────────────────────────────────────────
    log_dir: Path = Field(default=Path("data/logs"))
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [
            self.log_dir,
            self.database_path.parent,
        ]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """Factory – build settings from the environment."""
    return Settings()  # type: ignore[call-arg]
