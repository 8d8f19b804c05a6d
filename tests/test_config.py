"""Tests for configuration loading."""

import json

import pytest

from worldmorse.config_loader import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "WORLDMORSE_HOST",
        "WORLDMORSE_PORT",
        "WORLDMORSE_SERVER_URL",
        "WORLDMORSE_CALL_SIGN",
        "WORLDMORSE_CONFIG",
        "WORLDMORSE_ENV",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = Config.load(tmp_path / "absent.json")
        assert cfg.call_sign == ""
        assert cfg.relay.host == "127.0.0.1"
        assert cfg.relay.port == 3000
        assert cfg.relay.presence_timeout_s == 60
        assert cfg.relay.max_messages_per_channel == 1000
        assert cfg.relay.cors_origins == ["*"]
        assert cfg.client.poll_interval_s == 3.0
        assert cfg.client.recent_limit == 200
        assert cfg.keyer.dot_ms == 100

    def test_values_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "CALL_SIGN": "JA1ABC",
            "PORT": 8080,
            "PRESENCE_TIMEOUT_S": 30,
            "CORS_ORIGINS": "https://a.example, https://b.example",
            "SERVER_URL": "https://relay.example",
            "DOT_MS": 60,
            "UNKNOWN_KEY": True,
        }))
        cfg = Config.load(path)
        assert cfg.call_sign == "JA1ABC"
        assert cfg.relay.port == 8080
        assert cfg.relay.presence_timeout_s == 30
        assert cfg.relay.cors_origins == ["https://a.example", "https://b.example"]
        assert cfg.client.server_url == "https://relay.example"
        assert cfg.keyer.dot_ms == 60
        assert cfg._raw["UNKNOWN_KEY"] is True

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"PORT": 8080, "CALL_SIGN": "JA1ABC"}))
        monkeypatch.setenv("WORLDMORSE_PORT", "9090")
        monkeypatch.setenv("WORLDMORSE_CALL_SIGN", "W1AW")
        monkeypatch.setenv("WORLDMORSE_SERVER_URL", "http://10.0.0.2:3000")
        cfg = Config.load(path)
        assert cfg.relay.port == 9090
        assert cfg.call_sign == "W1AW"
        assert cfg.client.server_url == "http://10.0.0.2:3000"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"CALL_SIGN": "DK5EN"}))
        monkeypatch.setenv("WORLDMORSE_CONFIG", str(path))
        assert Config.load().call_sign == "DK5EN"

    def test_dev_path(self, monkeypatch):
        monkeypatch.setenv("WORLDMORSE_ENV", "dev")
        assert str(Config._get_default_path()).endswith("config.dev.json")


class TestSave:
    def test_save_and_reload(self, tmp_path):
        cfg = Config.load(tmp_path / "absent.json")
        cfg.call_sign = "JA1ABC"
        cfg.relay.cors_origins = ["https://a.example", "https://b.example"]
        cfg.client.heartbeat_interval_s = 15.0
        path = tmp_path / "saved.json"
        cfg.save(path)

        again = Config.load(path)
        assert again.to_dict() == cfg.to_dict()
        assert again.relay.cors_origins == ["https://a.example", "https://b.example"]
