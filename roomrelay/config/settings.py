"""
roomrelay -- Centralised configuration via pydantic-settings.

Environment variables override defaults using the ``RELAY_`` prefix
(e.g. ``RELAY_ROOM_CODE=ABCD``, ``RELAY_VERBOSE_LOGGING=true``).

Usage:
    from roomrelay.config.settings import get_settings
    settings = get_settings()          # cached singleton
    print(settings.collection_name)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Top-level configuration for a relay reader or writer."""

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------
    instance_id: str = "relay-1"
    environment: str = "production"  # production | staging | development

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379"
    stream_maxlen: int = 5000
    listen_block_ms: int = 5000
    listen_batch_size: int = 100
    listen_scan_skew_ms: int = Field(default=60_000, ge=0)

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------
    collection_name: str = "Messages"
    room_code: Optional[str] = None  # generated on start when unset
    room_code_alphabet: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    room_code_length: int = Field(default=4, gt=0)
    verbose_logging: bool = False
    tick_interval_seconds: float = Field(default=0.1, gt=0)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    metrics_enabled: bool = False
    prometheus_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "text"  # json | text

    # ------------------------------------------------------------------
    # Pydantic-settings config
    # ------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Return a cached singleton of the application settings.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    return RelaySettings()
