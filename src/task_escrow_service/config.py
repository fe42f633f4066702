"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEYS = frozenset({"issuer_public_key", "webhook_url"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity assertion verification configuration."""

    model_config = ConfigDict(extra="forbid")
    issuer_public_key: str

    @field_validator("issuer_public_key")
    @classmethod
    def _require_ed25519_prefix(cls, value: str) -> str:
        if not value.startswith("ed25519:"):
            msg = "issuer_public_key must use the 'ed25519:<base64>' format"
            raise ValueError(msg)
        return value


class NotificationsConfig(BaseModel):
    """Notification sink configuration."""

    model_config = ConfigDict(extra="forbid")
    webhook_url: str | None
    timeout_seconds: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class RulesConfig(BaseModel):
    """Marketplace rule constants: fees, thresholds and windows."""

    model_config = ConfigDict(extra="forbid")
    cancellation_fee_ratio: float
    dispute_fee_ratio: float
    min_reason_length: int
    restriction_days: int
    inactivity_days: int
    overwork_threshold: int
    overwork_high: int
    overwork_critical: int
    deadline_high_days: int
    deadline_critical_days: int
    delayed_payment_days: int
    delayed_payment_critical_days: int
    stale_submission_days: int
    stale_in_progress_days: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    notifications: NotificationsConfig
    request: RequestConfig
    rules: RulesConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache settings from the YAML configuration file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        pydantic.ValidationError: If any required value is missing or invalid.
    """
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Clear the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (REDACTION_MARKER if key in _SENSITIVE_KEYS and item else _redact(item))
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump())
