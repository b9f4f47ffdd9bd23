"""Load the host configuration from a JSON file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pydantic

from cnchannels.config.schema import HostConfig
from cnchannels.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/channels.json"


def load_config(path: str | Path) -> HostConfig:
    """Parse a config file. A missing file yields an empty configuration."""
    config_path = Path(path)
    if not config_path.exists():
        logger.warning("Config file not found at %s, using empty configuration", config_path)
        return HostConfig()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Config file {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
    try:
        return HostConfig.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ConfigurationError(f"Config file {config_path} is invalid: {exc}") from exc


def load_config_from_env(path: str | Path | None = None) -> HostConfig:
    """Load ``path`` (default: CNCHANNELS_CONFIG) and apply gateway env overrides."""
    config = load_config(path or os.environ.get("CNCHANNELS_CONFIG", DEFAULT_CONFIG_PATH))
    overrides = {
        "admin_token": os.environ.get("CNCHANNELS_ADMIN_TOKEN"),
        "upstream_url": os.environ.get("UPSTREAM_URL"),
        "upstream_token": os.environ.get("UPSTREAM_TOKEN"),
        "audit_log_path": os.environ.get("AUDIT_LOG_PATH"),
    }
    gateway = config.gateway.model_copy(
        update={key: value for key, value in overrides.items() if value}
    )
    return config.model_copy(update={"gateway": gateway})
