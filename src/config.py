"""Unified configuration loaded from .heritage.toml, env vars, and CLI flags.

Loading order: defaults → TOML file → env vars → CLI flags.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from heritage.records.fields import REQUIRED_FIELDS, SPECIALIST_FIELDS
from heritage.records.models import DEFAULT_SPECIALIST_CLASSIFICATIONS, Classification

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".heritage.toml"
CONFIG_SEARCH_PATHS = [
    Path("."),
    Path.home() / ".config" / "heritage",
]
DEFAULT_UNPUBLISH_PLACEHOLDER = "No reason provided"


class StoreConfig(BaseModel):
    """[store] section."""

    directory: str = "./data"
    lock_timeout: float = 5.0


class WorkflowConfig(BaseModel):
    """[workflow] section: routing and validation rules."""

    specialist_classifications: list[Classification] = Field(
        default_factory=lambda: sorted(DEFAULT_SPECIALIST_CLASSIFICATIONS)
    )
    specialist_fields: list[str] = Field(default_factory=lambda: sorted(SPECIALIST_FIELDS))
    required_fields: list[str] = Field(default_factory=lambda: list(REQUIRED_FIELDS))
    unpublish_placeholder: str = DEFAULT_UNPUBLISH_PLACEHOLDER

    @field_validator("unpublish_placeholder")
    @classmethod
    def _placeholder_not_blank(cls, value: str) -> str:
        if not value.strip():
            return DEFAULT_UNPUBLISH_PLACEHOLDER
        return value


class NotificationConfig(BaseModel):
    """[notifications] section."""

    slack_webhook: str = ""
    ntfy_url: str = ""
    ntfy_topic: str = "heritage"
    enabled: bool = True
    timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.slack_webhook or self.ntfy_url)


class LoggingConfig(BaseModel):
    """[logging] section."""

    level: str = "WARNING"


class HeritageConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def store_path(self) -> Path:
        return Path(self.store.directory).expanduser()


def load_config(path: str | Path | None = None) -> HeritageConfig:
    """Load configuration from a TOML file.

    Search order:
    1. Explicit path (if provided)
    2. .heritage.toml in CWD
    3. ~/.config/heritage/config.toml

    Then overlay environment variables.

    Args:
        path: Explicit path to a TOML file.

    Returns:
        Merged HeritageConfig.
    """
    data: dict[str, object] = {}

    if path is not None:
        toml_path = Path(path)
        if toml_path.exists():
            data = _load_toml(toml_path)
        else:
            logger.warning("Config file not found: %s", toml_path)
    else:
        for search_dir in CONFIG_SEARCH_PATHS:
            candidate = search_dir / CONFIG_FILENAME
            if candidate.exists():
                data = _load_toml(candidate)
                logger.info("Loaded config from %s", candidate)
                break
        global_config = Path.home() / ".config" / "heritage" / "config.toml"
        if not data and global_config.exists():
            data = _load_toml(global_config)
            logger.info("Loaded config from %s", global_config)

    config = HeritageConfig.model_validate(data) if data else HeritageConfig()

    return _apply_env_vars(config)


def merge_cli_overrides(config: HeritageConfig, **cli_kwargs: object) -> HeritageConfig:
    """Overlay explicitly-set CLI flags onto the config.

    Only overrides values where the CLI flag was explicitly provided
    (i.e., not None).
    """
    data = config.model_dump()

    mapping: dict[str, tuple[str, str]] = {
        "store_dir": ("store", "directory"),
        "lock_timeout": ("store", "lock_timeout"),
        "log_level": ("logging", "level"),
        "unpublish_placeholder": ("workflow", "unpublish_placeholder"),
    }

    for key, value in cli_kwargs.items():
        if value is None:
            continue
        if key in mapping:
            section, field = mapping[key]
            data[section][field] = str(value) if key == "store_dir" else value

    return HeritageConfig.model_validate(data)


def _load_toml(path: Path) -> dict[str, object]:
    """Load a TOML file and return the data dict."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _apply_env_vars(config: HeritageConfig) -> HeritageConfig:
    """Apply environment variable overrides to config."""
    data = config.model_dump()

    env_mapping: dict[str, tuple[str, str]] = {
        "HERITAGE_STORE_DIR": ("store", "directory"),
        "HERITAGE_LOG_LEVEL": ("logging", "level"),
        "HERITAGE_SLACK_WEBHOOK": ("notifications", "slack_webhook"),
        "HERITAGE_NTFY_URL": ("notifications", "ntfy_url"),
        "HERITAGE_NTFY_TOPIC": ("notifications", "ntfy_topic"),
        "HERITAGE_UNPUBLISH_PLACEHOLDER": ("workflow", "unpublish_placeholder"),
    }

    for env_var, (section, field) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            data[section][field] = value

    enabled_raw = os.environ.get("HERITAGE_NOTIFICATIONS_ENABLED")
    if enabled_raw is not None:
        data["notifications"]["enabled"] = enabled_raw.lower() in ("true", "1", "yes")
    timeout_raw = os.environ.get("HERITAGE_LOCK_TIMEOUT")
    if timeout_raw is not None:
        data["store"]["lock_timeout"] = float(timeout_raw)
    classifications_raw = os.environ.get("HERITAGE_SPECIALIST_CLASSIFICATIONS")
    if classifications_raw is not None:
        data["workflow"]["specialist_classifications"] = _split_csv(classifications_raw)
    fields_raw = os.environ.get("HERITAGE_SPECIALIST_FIELDS")
    if fields_raw is not None:
        data["workflow"]["specialist_fields"] = _split_csv(fields_raw)

    return HeritageConfig.model_validate(data)
