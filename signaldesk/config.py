"""
Client Configuration — Settings for the remote API and the trade lifecycle.

The settings manage:
  - Remote API location and credentials
  - Client-level settings (environment, log level, log format)
  - Trade lifecycle timing: countdown tick, poll cadence, poll budget
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SignalDeskSettings(BaseSettings):
    """Client-wide settings, overridable via ``SIGNALDESK_*`` env vars."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_prefix="SIGNALDESK_",
        extra="ignore",
    )

    # ── Client ───────────────────────────────────────────────────────
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    tracing_enabled: bool = False
    otlp_endpoint: str | None = None

    # ── Remote API ───────────────────────────────────────────────────
    api_base_url: str = "https://api.jinma.tech/api"
    api_token: str = ""
    http_timeout_seconds: float = 30.0

    # ── Eligibility ──────────────────────────────────────────────────
    min_movement_balance: float = Field(default=250.0, ge=0)

    # ── Lifecycle timing ─────────────────────────────────────────────
    countdown_tick_seconds: float = Field(default=1.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    poll_backoff_seconds: float = Field(default=15.0, gt=0)
    poll_max_attempts: int = Field(default=40, ge=1)
    poll_max_elapsed_seconds: float = Field(default=180.0, gt=0)
    catalog_refresh_seconds: float = Field(default=30.0, gt=0)
    history_page_size: int = Field(default=50, ge=1, le=100)
    # Used only when a history entry carries no settlesAt of its own.
    settlement_window_seconds: float = Field(default=1200.0, gt=0)


@lru_cache
def get_settings() -> SignalDeskSettings:
    """Singleton accessor — parsed once, cached forever."""
    return SignalDeskSettings()
