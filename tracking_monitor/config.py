"""Configuration management for the tracking monitor."""

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_PAGE_URL = "http://knvsh.gov.spb.ru/gosuslugi/svedeniya2/"


class StatusApiConfig(BaseModel):
    """Optional read-only HTTP status endpoint."""
    enabled: bool = Field(default=False, description="Serve the status API")
    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8090, ge=1, le=65535, description="Bind port")


class MonitorConfig(BaseModel):
    """Main configuration for the tracking monitor."""

    # Watched page
    page_url: str = Field(default=DEFAULT_PAGE_URL, description="Page that lists ready tracking numbers")
    poll_interval_seconds: float = Field(default=60.0, gt=0, description="Delay between two checks of one token")
    fetch_timeout_seconds: float = Field(default=15.0, gt=0, description="HTTP timeout for one page fetch")
    user_agent: str = Field(default="tracking-monitor/0.1", description="User-Agent header for page fetches")

    # Lifecycle
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0, description="Drain timeout for watchers on shutdown")
    delete_retry_attempts: int = Field(default=3, ge=1, description="Store delete attempts after a match")
    delete_retry_delay_seconds: float = Field(default=1.0, ge=0, description="Pause between delete or delivery attempts")
    notify_retry_attempts: int = Field(default=3, ge=1, description="Delivery attempts for the match notification")
    max_token_length: int = Field(default=64, ge=1, description="Longest accepted tracking number")

    # Storage
    db_path: str = Field(default="data/tracking.db", description="SQLite database with pending requests")

    # Telegram
    telegram_bot_token: Optional[str] = Field(default=None, description="Bot token from BotFather")
    updates_timeout_seconds: int = Field(default=30, ge=0, description="Long polling timeout for getUpdates")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Append logs to this file instead of stdout")

    status_api: StatusApiConfig = Field(default_factory=StatusApiConfig)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "y", "on")


def load_config(config_path: Optional[str] = None) -> MonitorConfig:
    """Load configuration from file, then apply environment variable overrides."""
    if config_path is None:
        config_path = os.getenv("TRACKING_MONITOR_CONFIG", "config/tracking.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
    if not isinstance(config_data, dict):
        raise ValueError(f"Config YAML must be a mapping: {config_path}")

    env_overrides = {
        "page_url": os.getenv("PAGE_URL"),
        "poll_interval_seconds": os.getenv("POLL_INTERVAL_SECONDS"),
        "fetch_timeout_seconds": os.getenv("FETCH_TIMEOUT_SECONDS"),
        "shutdown_timeout_seconds": os.getenv("SHUTDOWN_TIMEOUT_SECONDS"),
        "db_path": os.getenv("TRACKING_DB_PATH"),
        "telegram_bot_token": os.getenv("TELEGRAM_BOT_TOKEN"),
        "log_level": os.getenv("LOG_LEVEL"),
        "log_file": os.getenv("LOG_FILE"),
    }

    for key, value in env_overrides.items():
        if value is not None and value.strip():
            config_data[key] = value.strip()

    status_enabled = os.getenv("STATUS_API_ENABLED")
    status_port = os.getenv("STATUS_API_PORT")
    if status_enabled is not None or status_port is not None:
        status_api = dict(config_data.get("status_api") or {})
        if status_enabled is not None:
            status_api["enabled"] = _env_bool(status_enabled)
        if status_port is not None:
            status_api["port"] = int(status_port)
        config_data["status_api"] = status_api

    return MonitorConfig(**config_data)
