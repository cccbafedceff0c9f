"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    host: str
    port: int
    timezone: str
    log_level: str
    log_format: str
    vibelock_unlock_threshold: int

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_settings() -> BackendSettings:
    port_raw = os.getenv("FLAMO_PORT", "8000")
    threshold_raw = os.getenv("FLAMO_VIBELOCK_UNLOCK_THRESHOLD", "70")
    return BackendSettings(
        database_url=os.getenv("FLAMO_DATABASE_URL") or None,
        host=os.getenv("FLAMO_HOST", "127.0.0.1"),
        port=int(port_raw),
        timezone=os.getenv("FLAMO_TIMEZONE", "UTC"),
        log_level=os.getenv("FLAMO_LOG_LEVEL", "INFO"),
        log_format=os.getenv("FLAMO_LOG_FORMAT", "text"),
        vibelock_unlock_threshold=int(threshold_raw),
    )
