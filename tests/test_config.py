"""Tests for configuration loading."""
from pathlib import Path

import pytest

from claudito.config import AppConfig, load_config
from claudito.errors import ConfigError


class TestLoadConfig:

    def test_defaults_without_environment(self):
        config = load_config(env={})

        assert config.host == "0.0.0.0"
        assert config.port == 3000
        assert config.max_concurrent_agents == 3
        assert config.dev_mode is False
        assert config.data_dir == Path.home() / ".claudito"

    def test_environment_overrides_defaults(self, tmp_path):
        env = {
            "CLAUDITO_PORT": "8080",
            "CLAUDITO_DATA_DIR": str(tmp_path),
            "CLAUDITO_DEV_MODE": "true",
            "CLAUDITO_LOG_LEVEL": "debug",
        }

        config = load_config(env=env)

        assert config.port == 8080
        assert config.data_dir == tmp_path
        assert config.dev_mode is True
        assert config.log_level == "DEBUG"

    def test_explicit_overrides_win_over_environment(self):
        config = load_config(env={"CLAUDITO_PORT": "8080"}, port=9000, host=None)

        assert config.port == 9000
        assert config.host == "0.0.0.0"

    def test_invalid_integer_raises(self):
        with pytest.raises(ConfigError):
            load_config(env={"CLAUDITO_MAX_AGENTS": "many"})

    def test_non_positive_integer_raises(self):
        with pytest.raises(ConfigError):
            load_config(env={}, max_concurrent_agents=0)

    def test_unknown_override_raises(self):
        with pytest.raises(ConfigError):
            load_config(env={}, colour="blue")

    def test_pids_file_lives_in_data_dir(self, tmp_path):
        assert AppConfig(data_dir=tmp_path).pids_file == tmp_path / "pids.json"
