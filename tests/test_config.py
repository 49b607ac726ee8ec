"""Tests for sagarun.config."""

import os
from pathlib import Path

import pytest
import yaml

from sagarun.config import (
    PLATFORM_TENANT_ID,
    ConfigError,
    SagarunConfig,
    get_sagarun_home,
    load_config,
)


def _write_yaml(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f)


class TestSagarunHome:
    """Tests for home directory resolution."""

    def test_env_override(self, isolated_home):
        assert get_sagarun_home() == isolated_home

    def test_default(self, monkeypatch):
        monkeypatch.delenv("SAGARUN_HOME")
        assert get_sagarun_home() == Path("~/.config/sagarun").expanduser()


class TestSagarunConfig:
    """Tests for field validation."""

    def test_defaults(self):
        config = SagarunConfig()
        assert config.default_tenant_id == PLATFORM_TENANT_ID
        assert config.lock_backend == "memory"
        assert config.persistence_policy == "escalate"
        assert config.definitions_path == Path("~/.config/sagarun/definitions").expanduser()
        assert config.log_path is None

    @pytest.mark.parametrize("overrides, message", [
        ({"lock_backend": "zookeeper"}, "lock_backend"),
        ({"lock_backend": "redis"}, "redis_url is required"),
        ({"persistence_policy": "ignore"}, "persistence_policy"),
        ({"persistence_retries": 0}, "persistence_retries"),
        ({"log_format": "xml"}, "log_format"),
    ])
    def test_invalid_values(self, overrides, message):
        with pytest.raises(ConfigError, match=message):
            SagarunConfig(**overrides)

    def test_redis_backend(self):
        config = SagarunConfig(lock_backend="redis", redis_url="redis://localhost:6379/0")
        assert config.lock_ttl_seconds == 300

    def test_round_trip_dict(self):
        config = SagarunConfig(state_dir="/tmp/state", persistence_policy="warn")
        assert SagarunConfig.from_dict(config.to_dict()) == config

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigError, match="Unknown config keys: color"):
            SagarunConfig.from_dict({"color": "blue"})


class TestLoadConfig:
    """Tests for loading config.yaml."""

    def test_missing_file(self, isolated_home):
        with pytest.raises(FileNotFoundError, match="sagarun init"):
            load_config()

    def test_loads_from_home(self, isolated_home, tmp_path):
        _write_yaml(isolated_home / "config.yaml", {
            "definitions_dir": str(tmp_path / "defs"),
            "lock_backend": "memory",
            "persistence_retries": 5,
        })
        config = load_config()
        assert config.definitions_path == tmp_path / "defs"
        assert config.persistence_retries == 5

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "elsewhere.yaml"
        _write_yaml(path, {"log_level": "DEBUG"})
        assert load_config(path).log_level == "DEBUG"

    def test_empty_file_uses_defaults(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("")
        assert load_config() == SagarunConfig()

    def test_invalid_yaml(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("lock_backend: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config()

    def test_not_a_mapping(self, isolated_home):
        _write_yaml(isolated_home / "config.yaml", ["a", "b"])
        with pytest.raises(ConfigError, match="mapping"):
            load_config()

    def test_env_file_loaded(self, isolated_home, tmp_path, monkeypatch):
        monkeypatch.delenv("SAGARUN_TEST_REDIS", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("SAGARUN_TEST_REDIS=redis://cache:6379/1\n")
        _write_yaml(isolated_home / "config.yaml", {"env_file": str(env_file)})

        load_config()
        assert os.environ["SAGARUN_TEST_REDIS"] == "redis://cache:6379/1"
        monkeypatch.delenv("SAGARUN_TEST_REDIS")

    def test_env_file_does_not_override(self, isolated_home, tmp_path, monkeypatch):
        monkeypatch.setenv("SAGARUN_TEST_REDIS", "redis://already-set")
        env_file = tmp_path / ".env"
        env_file.write_text("SAGARUN_TEST_REDIS=redis://from-file\n")
        _write_yaml(isolated_home / "config.yaml", {"env_file": str(env_file)})

        load_config()
        assert os.environ["SAGARUN_TEST_REDIS"] == "redis://already-set"
