"""
Runtime configuration.

Environment Variables:
    PROTECT_LEDGER_MODE: memory | live (default memory)
    PROTECT_LEDGER_URL, PROTECT_LEDGER_TOKEN, PROTECT_LEDGER_TIMEOUT
    PROTECT_ADJUDICATION_MODE: memory | live (default memory)
    PROTECT_ADJUDICATION_URL (default http://claimsiq:3000)
    PROTECT_ADJUDICATION_TOKEN, PROTECT_ADJUDICATION_TIMEOUT
    PROTECT_QUOTE_TTL_HOURS (default 24)
    PROTECT_SILENCE_THRESHOLD_HOURS (default 24)
    PROTECT_CURRENCY (default USD)
    PROTECT_CRON_SECRET (default dev-cron-secret)
    PROTECT_WATCHDOG_ENABLED, PROTECT_WATCHDOG_INTERVAL_SECONDS
    PROTECT_INLINE_SIDE_EFFECTS (default true)
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .db.config import DatabaseConfig, RecordStoreDriver, get_recordstore_driver


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class ProtectConfig:
    ledger_mode: str = "memory"
    ledger_url: Optional[str] = None
    ledger_token: Optional[str] = None
    ledger_timeout_seconds: float = 10.0

    adjudication_mode: str = "memory"
    adjudication_url: str = "http://claimsiq:3000"
    adjudication_token: Optional[str] = None
    adjudication_timeout_seconds: float = 10.0

    quote_ttl_hours: int = 24
    silence_threshold_hours: int = 24
    currency: str = "USD"
    schema_version: str = "1.0.0"

    cron_secret: str = "dev-cron-secret"
    watchdog_enabled: bool = False
    watchdog_interval_seconds: int = 900

    # HTTP handlers set this False and dispatch from BackgroundTasks
    inline_side_effects: bool = True

    recordstore_driver: RecordStoreDriver = RecordStoreDriver.MEMORY
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @property
    def quote_ttl(self) -> timedelta:
        return timedelta(hours=self.quote_ttl_hours)

    @property
    def silence_threshold(self) -> timedelta:
        return timedelta(hours=self.silence_threshold_hours)

    @classmethod
    def from_env(cls) -> "ProtectConfig":
        """Load configuration from environment variables."""
        return cls(
            ledger_mode=os.environ.get("PROTECT_LEDGER_MODE", "memory").lower(),
            ledger_url=os.environ.get("PROTECT_LEDGER_URL") or None,
            ledger_token=os.environ.get("PROTECT_LEDGER_TOKEN") or None,
            ledger_timeout_seconds=float(os.environ.get("PROTECT_LEDGER_TIMEOUT", "10")),
            adjudication_mode=os.environ.get("PROTECT_ADJUDICATION_MODE", "memory").lower(),
            adjudication_url=os.environ.get("PROTECT_ADJUDICATION_URL", "http://claimsiq:3000"),
            adjudication_token=os.environ.get("PROTECT_ADJUDICATION_TOKEN") or None,
            adjudication_timeout_seconds=float(os.environ.get("PROTECT_ADJUDICATION_TIMEOUT", "10")),
            quote_ttl_hours=int(os.environ.get("PROTECT_QUOTE_TTL_HOURS", "24")),
            silence_threshold_hours=int(os.environ.get("PROTECT_SILENCE_THRESHOLD_HOURS", "24")),
            currency=os.environ.get("PROTECT_CURRENCY", "USD"),
            cron_secret=os.environ.get("PROTECT_CRON_SECRET", "dev-cron-secret"),
            watchdog_enabled=_env_bool("PROTECT_WATCHDOG_ENABLED", False),
            watchdog_interval_seconds=int(os.environ.get("PROTECT_WATCHDOG_INTERVAL_SECONDS", "900")),
            inline_side_effects=_env_bool("PROTECT_INLINE_SIDE_EFFECTS", True),
            recordstore_driver=get_recordstore_driver(),
            database=DatabaseConfig.from_env(),
        )
