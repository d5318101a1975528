"""Tests for configuration loading."""

import logging

import pytest

from mcp_reload_proxy.config import (
    child_environment,
    configure_logging,
    load_config,
    load_environment_overrides,
    parse_bool,
    parse_list,
)
from mcp_reload_proxy.errors import ConfigError


class TestParsers:
    """Test environment value parsers."""

    @pytest.mark.parametrize("value", ["true", "1", "YES", " on "])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_falsy(self, value):
        assert parse_bool(value) is False

    def test_parse_list(self):
        assert parse_list("a, b,,c ") == ["a", "b", "c"]


class TestEnvironmentOverrides:
    """Test MCPDEV_PROXY_* environment variables."""

    def test_reads_known_variables(self):
        """Test known variables map onto config fields."""
        overrides = load_environment_overrides(
            {
                "MCPDEV_PROXY_RESTART_LIMIT": "5",
                "MCPDEV_PROXY_AUTO_RESTART": "false",
                "MCPDEV_PROXY_TIMEOUT": "2.5",
                "MCPDEV_PROXY_CHILD_CMD": "node",
                "MCPDEV_PROXY_CHILD_ARGS": "server.js,--stdio",
                "MCPDEV_PROXY_CWD": "/srv",
                "UNRELATED": "x",
            }
        )
        assert overrides == {
            "restart_limit": 5,
            "auto_restart": False,
            "operation_timeout": 2.5,
            "command": "node",
            "args": ["server.js", "--stdio"],
            "working_directory": "/srv",
        }

    def test_blank_values_ignored(self):
        """Test blank variables are treated as unset."""
        assert load_environment_overrides({"MCPDEV_PROXY_LOG_LEVEL": "  "}) == {}

    def test_invalid_number(self):
        """Test unparseable numbers raise ConfigError naming the variable."""
        with pytest.raises(ConfigError, match="MCPDEV_PROXY_RESTART_LIMIT"):
            load_environment_overrides({"MCPDEV_PROXY_RESTART_LIMIT": "many"})


class TestLoadConfig:
    """Test merged configuration loading."""

    def test_overrides_win_over_environment(self):
        """Test CLI overrides take precedence over the environment."""
        config = load_config(
            {"command": "python", "restart_limit": 1, "log_level": None},
            environ={
                "MCPDEV_PROXY_CHILD_CMD": "node",
                "MCPDEV_PROXY_RESTART_LIMIT": "7",
                "MCPDEV_PROXY_LOG_LEVEL": "debug",
            },
        )
        assert config.command == "python"
        assert config.restart_limit == 1
        assert config.log_level == "debug"

    def test_command_required(self):
        """Test a missing child command is reported."""
        with pytest.raises(ConfigError, match="Child command is required"):
            load_config({}, environ={})

    def test_validation_errors_reported(self):
        """Test out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError, match="restart_limit"):
            load_config({"command": "node", "restart_limit": 50}, environ={})


class TestChildEnvironment:
    """Test child environment construction."""

    def test_inherits_and_filters(self):
        """Test proxy settings are removed and overrides applied."""
        env = child_environment(
            {"API_KEY": "secret"},
            base={"PATH": "/bin", "MCPDEV_PROXY_TIMEOUT": "5", "API_KEY": "old"},
        )
        assert env == {"PATH": "/bin", "API_KEY": "secret"}


class TestConfigureLogging:
    """Test logging setup."""

    def test_log_file(self, tmp_path):
        """Test logs go to the configured file."""
        log_file = tmp_path / "proxy.log"
        configure_logging("debug", str(log_file))
        logging.getLogger("mcp_reload_proxy.test").debug("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "hello file" in log_file.read_text()
        assert logging.getLogger().level == logging.DEBUG
        configure_logging("info")

    def test_mcp_levels_map(self):
        """Test MCP-only level names map onto stdlib levels."""
        configure_logging("notice")
        assert logging.getLogger().level == logging.INFO
        configure_logging("emergency")
        assert logging.getLogger().level == logging.CRITICAL
        configure_logging("info")
