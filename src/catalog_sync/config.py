"""
Configuration loading and logging setup.

Configuration lives in ~/.catalog-sync/config.json. Environment variables
override file values so containers can run without a config file.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from catalog_sync.tenants import CLUSTER_BASE_URLS, Credentials, Tenant

logger = structlog.get_logger(__name__)

ENV_PREFIX = "CATALOG_SYNC_"

# config key -> environment variable
ENV_MAPPINGS = {
    "app_key": "CATALOG_SYNC_APP_KEY",
    "app_secret": "CATALOG_SYNC_APP_SECRET",
    "state_dir": "CATALOG_SYNC_STATE_DIR",
    "webhook_url": "CATALOG_SYNC_WEBHOOK_URL",
    "max_workers": "CATALOG_SYNC_MAX_WORKERS",
    "reconcile_interval_hours": "CATALOG_SYNC_RECONCILE_INTERVAL_HOURS",
    "log_level": "CATALOG_SYNC_LOG_LEVEL",
    "log_format": "CATALOG_SYNC_LOG_FORMAT",
}


class ConfigError(Exception):
    """Configuration file or environment is invalid."""
    pass


class TenantConfig(BaseModel):
    """A configured shop with its API key pair."""

    id: str
    shop_id: int
    cluster: str = "eu1"
    language: str = "nl"
    api_key: str
    api_secret: str
    sync_enabled: bool = True

    @field_validator("cluster")
    @classmethod
    def known_cluster(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in CLUSTER_BASE_URLS:
            raise ValueError(f"Unknown cluster '{v}'")
        return v

    def to_tenant(self) -> Tenant:
        return Tenant(
            id=self.id,
            shop_id=self.shop_id,
            cluster=self.cluster,
            language=self.language,
        )

    def credentials(self) -> Credentials:
        return Credentials(api_key=self.api_key, api_secret=self.api_secret)


class SyncConfig(BaseModel):
    """Engine settings."""

    app_key: str = ""
    app_secret: str = ""
    state_dir: str | None = None
    webhook_url: str | None = None  # public base URL of this service

    max_workers: int = Field(4, ge=1, le=64)
    reconcile_interval_hours: float = Field(6.0, gt=0)
    max_attempts: int = Field(5, ge=1)
    backoff_base_seconds: float = Field(30.0, gt=0)
    backoff_max_seconds: float = Field(1800.0, gt=0)
    rate_limit_max_wait: float = Field(5.0, ge=0)
    request_timeout: float = Field(30.0, gt=0)
    page_size: int = Field(250, ge=1, le=250)

    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"

    tenants: list[TenantConfig] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        v = v.upper()
        if not isinstance(getattr(logging, v, None), int):
            raise ValueError(f"Unknown log level '{v}'")
        return v

    def callback_url(self, tenant_id: str) -> str | None:
        if not self.webhook_url:
            return None
        return f"{self.webhook_url.rstrip('/')}/webhooks/{tenant_id}"

    def tenant(self, tenant_id: str) -> TenantConfig | None:
        for tenant in self.tenants:
            if tenant.id == tenant_id:
                return tenant
        return None


def get_config_path() -> Path:
    """Get the configuration file path."""
    override = os.environ.get(f"{ENV_PREFIX}CONFIG")
    if override:
        return Path(override)
    return Path.home() / ".catalog-sync" / "config.json"


def load_config(path: str | Path | None = None) -> SyncConfig:
    """
    Load configuration from file, with environment variable overrides.

    Priority:
    1. Environment variables
    2. Config file values
    3. Defaults

    Raises:
        ConfigError: If the file is unreadable or values are invalid
    """
    config_path = Path(path) if path else get_config_path()
    data: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")

    for config_key, env_var in ENV_MAPPINGS.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            data[config_key] = env_value

    try:
        return SyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_config(config: SyncConfig, path: str | Path | None = None) -> Path:
    """Save configuration to file, readable by the owner only."""
    config_path = Path(path) if path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(config.model_dump(mode="json"), f, indent=2)

    # Contains API secrets
    os.chmod(config_path, 0o600)
    logger.info("Configuration saved", path=str(config_path))
    return config_path


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Set up structlog with a level filter and console or JSON output."""
    level_value = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
