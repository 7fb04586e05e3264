"""photochat client configuration.

Loads settings from a single YAML file (``photochat.settings.yaml`` by
default) into nested pydantic models. A missing file is not an error: the
defaults below describe a local development backend.

Sections:
  * api      : REST base URL and request timeout
  * realtime : WebSocket endpoint and the transport's retry policy
  * chat     : pagination, message limits and typing timers
  * storage  : where the auth flow persists tokens and the user profile
  * logging  : root log level
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("photochat.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ApiSettings(BaseModel):
    base_url:                str   = "http://localhost:3000"
    request_timeout_seconds: float = 30.0


class RealtimeSettings(BaseModel):
    """WebSocket endpoint and the transport's built-in retry policy."""
    url:                        Optional[str] = None
    path:                       str   = "/ws"
    reconnection:               bool  = True
    reconnection_attempts:      int   = Field(default=5, ge=0)
    reconnection_delay_seconds: float = Field(default=1.0, ge=0)
    send_buffer_size:           int   = Field(default=100, ge=0)


class ChatSettings(BaseModel):
    page_size:                 int   = Field(default=20, ge=1)
    max_message_length:        int   = Field(default=500, ge=1)
    typing_timeout_seconds:    float = Field(default=2.0, gt=0)
    remote_typing_ttl_seconds: float = Field(default=3.0, gt=0)


class StorageSettings(BaseModel):
    credentials_path: str = "photochat.credentials.json"


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    api:      ApiSettings      = Field(default_factory=ApiSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)

    def realtime_url(self) -> str:
        """Return the WebSocket URL, deriving it from the API base URL if unset."""
        if self.realtime.url:
            return self.realtime.url
        parts = urlsplit(self.api.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + self.realtime.path
        return urlunsplit((scheme, parts.netloc, path, "", ""))


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_relative(path_value: str, settings_path: Path) -> str:
    """Resolve a relative path against the settings file's directory."""
    path = Path(path_value)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load the settings file into an *AppConfig* object."""
    path = Path(settings_path) if settings_path is not None else SETTINGS_FILE
    data = _load_yaml(path)

    config = AppConfig(**data)
    config.storage.credentials_path = _resolve_relative(
        config.storage.credentials_path, path
    )
    logger.info(
        "Settings loaded (api=%s, realtime=%s, page_size=%d)",
        config.api.base_url,
        config.realtime_url(),
        config.chat.page_size,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
