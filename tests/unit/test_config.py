"""
Unit tests for ServerConfig.
"""

import pytest

from contactserver.config import ServerConfig


class TestDefaults:
    """Tests for the production defaults."""

    def test_defaults(self):
        config = ServerConfig()

        assert config.host == ""
        assert config.port == 1337
        assert config.max_connections == 100
        assert config.rate_limit_window == 10.0
        assert config.rate_limit_max == 5
        assert config.rate_limit_cleanup_interval == 60.0
        assert config.max_input_size == 1024
        assert config.conn_timeout == 60.0
        assert config.read_timeout == 30.0
        assert config.shutdown_grace == 10.0

    def test_defaults_are_valid(self):
        ServerConfig().validate()


class TestValidate:
    """Tests for ServerConfig.validate()."""

    @pytest.mark.parametrize("overrides", [
        {"port": -1},
        {"port": 65536},
        {"max_connections": 0},
        {"max_input_size": 0},
        {"buffer_size": 0},
        {"rate_limit_max": 0},
        {"rate_limit_window": 0},
        {"rate_limit_cleanup_interval": -5},
        {"conn_timeout": 0},
        {"read_timeout": 0},
        {"shutdown_grace": -1},
    ])
    def test_rejects_invalid(self, overrides):
        with pytest.raises(ValueError):
            ServerConfig(**overrides).validate()

    def test_port_zero_allowed(self):
        ServerConfig(port=0).validate()

    def test_zero_grace_allowed(self):
        ServerConfig(shutdown_grace=0).validate()


class TestFromEnv:
    """Tests for ServerConfig.from_env()."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CONTACT_HOST", "127.0.0.1")
        monkeypatch.setenv("CONTACT_PORT", "2020")
        monkeypatch.setenv("CONTACT_MAX_CONNECTIONS", "7")
        monkeypatch.setenv("CONTACT_LOG_LEVEL", "DEBUG")

        config = ServerConfig.from_env()

        assert config.host == "127.0.0.1"
        assert config.port == 2020
        assert config.max_connections == 7
        assert config.log_level == "DEBUG"

    def test_falls_back_to_defaults(self, monkeypatch):
        for name in ("CONTACT_HOST", "CONTACT_PORT",
                     "CONTACT_MAX_CONNECTIONS", "CONTACT_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.port == 1337
        assert config.max_connections == 100

    def test_bad_port_raises(self, monkeypatch):
        monkeypatch.setenv("CONTACT_PORT", "not-a-port")

        with pytest.raises(ValueError):
            ServerConfig.from_env()
