"""Configuration system for cytube-bot.

All Pydantic models are defined here with sensible defaults; a config file
only needs the ``cytube.channel`` key to validate.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Connection
# ═══════════════════════════════════════════════════════════════

class CytubeConfig(BaseModel):
    url: str = "https://cytu.be"
    channel: str
    channel_password: str | None = None


class BotConfig(BaseModel):
    username: str = "CyTubeBot"
    password: str | None = None


class ConnectionConfig(BaseModel):
    max_reconnect_attempts: int = Field(default=10, ge=0)
    reconnect_delay_seconds: float = Field(default=5.0, gt=0, description="Base backoff delay")
    rate_limit_delay_cap_seconds: float = Field(
        default=60.0, gt=0, description="Ceiling for the base delay after rate-limit doubling",
    )
    max_reconnect_delay_seconds: float = Field(default=300.0, gt=0)
    min_time_between_attempts_seconds: float = Field(default=2.0, ge=0)
    connect_timeout_seconds: float = Field(default=30.0, gt=0)
    join_timeout_seconds: float = Field(default=10.0, gt=0)
    login_timeout_seconds: float = Field(default=10.0, gt=0)
    socket_config_timeout_seconds: float = Field(default=10.0, gt=0)
    post_login_delay_seconds: float = Field(default=2.0, ge=0)
    socketio_path: str = "/socket.io"
    transports: list[str] = Field(default_factory=lambda: ["websocket"])


# ═══════════════════════════════════════════════════════════════
#  Economy
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "cytube_bot.db"


class LedgerConfig(BaseModel):
    currency_symbol: str = "$"
    starting_balance: int = Field(default=0, ge=0)


class CoinFlipConfig(BaseModel):
    enabled: bool = True
    min_wager: int = Field(default=1, ge=1)
    max_wager: int | None = None
    challenge_ttl_seconds: float = Field(default=30.0, gt=0)
    house_name: str = "dazza"
    big_win_announce_threshold: int = 100
    cooldown_seconds: float = Field(default=3.0, ge=0)
    aliases: list[str] = Field(default_factory=lambda: ["coin_flip", "coinflip", "flip", "cf"])


# ═══════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════

class CommandsConfig(BaseModel):
    prefix: str = "!"
    stale_message_seconds: float = Field(default=30.0, gt=0, description="Ignore chat older than this")
    max_processed_messages: int = Field(default=1000, ge=10)


class SchedulerConfig(BaseModel):
    challenge_sweep_interval_seconds: float = Field(default=60.0, gt=0)


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28290


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class AppConfig(BaseModel):
    """Full bot config."""

    cytube: CytubeConfig
    bot: BotConfig = Field(default_factory=BotConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    coin_flip: CoinFlipConfig = Field(default_factory=CoinFlipConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ignored_users: list[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> AppConfig:
    """Load and validate YAML config file into AppConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return AppConfig(**raw)
