"""
Tests for settings loading and validation.
"""

import logging

import pytest
import yaml
from pydantic import ValidationError

from board_sync.config import SyncSettings, configure_logging, load_settings


class TestSyncSettings:
    """Defaults, validation and derived URLs."""

    def test_defaults(self):
        settings = SyncSettings()
        assert settings.mutation_timeout == 30.0
        assert settings.new_task_position == 9999.0
        assert settings.db_schema == "public"

    def test_urls_derived_from_base(self):
        settings = SyncSettings(url="https://abc.example.co/")
        assert settings.rest_url == "https://abc.example.co/rest/v1"
        assert settings.realtime_url == "wss://abc.example.co/realtime/v1/websocket"
        assert SyncSettings(url="http://localhost:54321").realtime_url == \
            "ws://localhost:54321/realtime/v1/websocket"

    def test_missing_url(self):
        with pytest.raises(ValueError):
            SyncSettings().rest_url

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            SyncSettings(mutation_timeout=0)
        with pytest.raises(ValidationError):
            SyncSettings(log_level="chatty")
        with pytest.raises(ValidationError):
            SyncSettings(join_timeout=-1)

    def test_log_level_normalized(self):
        assert SyncSettings(log_level="debug").log_level == "DEBUG"


class TestLoadSettings:
    """YAML file and environment overrides."""

    def test_yaml_then_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "board_sync.yaml"
        path.write_text(yaml.safe_dump({"url": "https://from-file.example", "join_timeout": 5}))
        monkeypatch.setenv("BOARD_SYNC_JOIN_TIMEOUT", "2.5")
        monkeypatch.setenv("BOARD_SYNC_MUTATION_TIMEOUT", "none")

        settings = load_settings(path)
        assert settings.url == "https://from-file.example"
        assert settings.join_timeout == 2.5
        assert settings.mutation_timeout is None

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yml"
        path.write_text("api_key: anon-key\n")
        monkeypatch.setenv("BOARD_SYNC_CONFIG", str(path))
        assert load_settings().api_key == "anon-key"

    def test_empty_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BOARD_SYNC_CONFIG", raising=False)
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path) == SyncSettings()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ValueError):
            load_settings(path)

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_configure_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        configure_logging("debug")
        assert calls[0]["level"] == "DEBUG"
