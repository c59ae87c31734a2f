"""Tests for sync configuration."""

import json

import pytest

from jamexplorer.common.config import (
    DEFAULT_WS_URL,
    SyncConfig,
    load_config,
)


class TestSyncConfig:
    def test_defaults(self):
        config = SyncConfig()
        assert config.default_endpoint == DEFAULT_WS_URL
        assert config.subscribe_method == "jam.Subscribe"
        assert config.new_block_topic == "jam.NewBlock"
        assert config.get_state_method == "jam.GetState"
        assert config.reconnect_max_attempts == 10

    def test_backoff_doubles_and_caps(self):
        config = SyncConfig(reconnect_initial_delay=1.0, reconnect_max_delay=30.0)
        delays = [config.backoff_delay(i) for i in range(7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    @pytest.mark.parametrize("overrides", [
        {"reconnect_max_attempts": -1},
        {"reconnect_initial_delay": 0},
        {"call_timeout": 0},
        {"connect_timeout": -1},
        {"tick_interval": 0},
        {"state_fetch_attempts": 0},
    ])
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            SyncConfig(**overrides)

    def test_zero_reconnect_attempts_allowed(self):
        assert SyncConfig(reconnect_max_attempts=0).reconnect_max_attempts == 0

    def test_from_json(self):
        config = SyncConfig.from_json({"call_timeout": 3, "new_block_topic": "blocks"})
        assert config.call_timeout == 3
        assert config.new_block_topic == "blocks"

    def test_from_json_unknown_key(self):
        with pytest.raises(ValueError, match="bogus"):
            SyncConfig.from_json({"bogus": 1})


class TestLoadConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text(json.dumps({"default_endpoint": "ws://node:9999/ws"}))
        assert load_config(path).default_endpoint == "ws://node:9999/ws"

    def test_load_rejects_non_object(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_config(path)

    def test_load_rejects_bad_json(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            load_config(path)
