"""
Client configuration and logging setup.

Settings come from an optional YAML file and ``BOARD_SYNC_*`` environment
variables (environment wins). Embedding applications call
``configure_logging`` once at startup; library modules only create loggers.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "BOARD_SYNC_"
CONFIG_PATH_ENV = "BOARD_SYNC_CONFIG"


class SyncSettings(BaseModel):
    """Connection and behavior settings for a board sync client."""

    url: Optional[str] = Field(default=None, description="Project base URL (https://...)")
    api_key: Optional[str] = Field(default=None, description="Anonymous API key")
    access_token: Optional[str] = Field(default=None, description="Signed-in user's JWT")
    db_schema: str = Field(default="public", description="Database schema the tables live in")
    heartbeat_interval: float = Field(default=25.0, gt=0, description="Realtime heartbeat seconds")
    join_timeout: float = Field(default=10.0, gt=0, description="Channel handshake timeout seconds")
    mutation_timeout: Optional[float] = Field(
        default=30.0, description="Seconds before an unconfirmed mutation rolls back; None disables"
    )
    new_task_position: float = Field(default=9999.0, description="Sentinel position for new tasks")
    log_level: str = Field(default="INFO", description="Root log level for configure_logging")

    @field_validator("mutation_timeout")
    @classmethod
    def validate_mutation_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("mutation_timeout must be positive or None")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def rest_url(self) -> str:
        return f"{self._base_url()}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self._base_url()
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"

    def _base_url(self) -> str:
        if not self.url:
            raise ValueError("url is not configured")
        return self.url.rstrip("/")


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for name in SyncSettings.model_fields:
        value = os.getenv(ENV_PREFIX + name.upper())
        if value is None:
            continue
        if name == "mutation_timeout" and value.strip().lower() in ("", "none", "off"):
            overrides[name] = None
        else:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[Union[str, Path]] = None) -> SyncSettings:
    """
    Load settings from YAML and the environment.

    Args:
        path: YAML file; defaults to ``$BOARD_SYNC_CONFIG`` when set

    Returns:
        Validated SyncSettings

    Raises:
        ValueError: the file is not a mapping or a value fails validation
        FileNotFoundError: an explicit path does not exist
    """
    path = path or os.getenv(CONFIG_PATH_ENV)
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError("Settings file must contain a YAML mapping")
        data.update(loaded)
        logger.debug(f"Loaded settings from {path}")
    data.update(_env_overrides())
    return SyncSettings.model_validate(data)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding the client."""
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
