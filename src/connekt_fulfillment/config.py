"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".connekt_fulfillment" / "cf.db")
    default_currency: str = "GMD"
    contract_expiry_days: int = 7
    lock_timeout: float = 5.0
    notify_timeout: float = 5.0
    notify_max_attempts: int = 5
    sweep_interval: float = 60.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CF_DB_PATH"):
            config.db_path = Path(db)

        if currency := os.environ.get("CF_DEFAULT_CURRENCY"):
            config.default_currency = currency.upper()

        if days := os.environ.get("CF_CONTRACT_EXPIRY_DAYS"):
            config.contract_expiry_days = int(days)

        if lock_timeout := os.environ.get("CF_LOCK_TIMEOUT"):
            config.lock_timeout = float(lock_timeout)

        if notify_timeout := os.environ.get("CF_NOTIFY_TIMEOUT"):
            config.notify_timeout = float(notify_timeout)

        if attempts := os.environ.get("CF_NOTIFY_MAX_ATTEMPTS"):
            config.notify_max_attempts = int(attempts)

        if interval := os.environ.get("CF_SWEEP_INTERVAL"):
            config.sweep_interval = float(interval)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CF_SLACK_CHANNEL")

        if level := os.environ.get("CF_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
