"""Tests for settings loading."""
from pathlib import Path

import pytest

from photochat import config as config_module
from photochat.config import AppConfig, ApiSettings, RealtimeSettings, load_config


SETTINGS_YAML = """\
api:
  base_url: "https://chat.example.com/api"
chat:
  page_size: 50
storage:
  credentials_path: "state/creds.json"
logging:
  level: "debug"
"""


def test_missing_file_yields_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml")

    assert config.api.base_url == "http://localhost:3000"
    assert config.chat.page_size == 20
    assert config.chat.max_message_length == 500
    assert config.chat.typing_timeout_seconds == 2.0
    assert config.realtime.reconnection_attempts == 5
    assert config.realtime_url() == "ws://localhost:3000/ws"


def test_yaml_overrides_and_relative_paths(tmp_path):
    settings = tmp_path / "photochat.settings.yaml"
    settings.write_text(SETTINGS_YAML)

    config = load_config(settings)

    assert config.chat.page_size == 50
    assert config.chat.max_message_length == 500
    assert config.logging.level == "debug"
    assert Path(config.storage.credentials_path) == tmp_path.resolve() / "state" / "creds.json"
    assert config.realtime_url() == "wss://chat.example.com/api/ws"


def test_explicit_realtime_url_wins():
    config = AppConfig(
        api=ApiSettings(base_url="https://chat.example.com"),
        realtime=RealtimeSettings(url="wss://push.example.com/socket"),
    )
    assert config.realtime_url() == "wss://push.example.com/socket"


def test_invalid_values_are_rejected(tmp_path):
    settings = tmp_path / "bad.yaml"
    settings.write_text("chat:\n  page_size: 0\n")
    with pytest.raises(ValueError):
        load_config(settings)


def test_get_config_is_cached(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "SETTINGS_FILE", tmp_path / "absent.yaml")
    config_module.reset_config()
    try:
        first = config_module.get_config()
        assert config_module.get_config() is first
        config_module.reset_config()
        assert config_module.get_config() is not first
    finally:
        config_module.reset_config()
