"""Configuration loading from environment variables and CLI overrides."""

import logging
import os
import sys
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from .errors import ConfigError
from .models import ProxyConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "MCPDEV_PROXY_"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# MCP log levels mapped onto stdlib levels
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

TRUE_VALUES = {"true", "1", "yes", "on"}


def parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


def parse_list(value: str) -> list[str]:
    """Split a comma separated value, dropping empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


# Environment variable -> (config field, parser)
ENV_VAR_MAPPINGS: dict[str, tuple[str, Callable[[str], Any]]] = {
    f"{ENV_PREFIX}LOG_LEVEL": ("log_level", str),
    f"{ENV_PREFIX}LOG_FILE": ("log_file", str),
    f"{ENV_PREFIX}RESTART_LIMIT": ("restart_limit", int),
    f"{ENV_PREFIX}AUTO_RESTART": ("auto_restart", parse_bool),
    f"{ENV_PREFIX}TIMEOUT": ("operation_timeout", float),
    f"{ENV_PREFIX}RESTART_DELAY": ("restart_delay", float),
    f"{ENV_PREFIX}GRACEFUL_TIMEOUT": ("graceful_timeout", float),
    f"{ENV_PREFIX}CHILD_CMD": ("command", str),
    f"{ENV_PREFIX}CHILD_ARGS": ("args", parse_list),
    f"{ENV_PREFIX}CWD": ("working_directory", str),
}


def load_environment_overrides(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Read proxy settings from ``MCPDEV_PROXY_*`` environment variables.

    Args:
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Dictionary of config field values found in the environment

    Raises:
        ConfigError: If a variable cannot be parsed
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for env_var, (field_name, parser) in ENV_VAR_MAPPINGS.items():
        raw = environ.get(env_var)
        if raw is None or raw.strip() == "":
            continue
        try:
            overrides[field_name] = parser(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_var}: {raw!r} ({e})") from e

    return overrides


def load_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """Build the proxy configuration.

    Precedence is defaults, then environment variables, then ``overrides``
    (usually parsed CLI options). ``None`` values in ``overrides`` are ignored.

    Raises:
        ConfigError: If the merged configuration is invalid
    """
    values = load_environment_overrides(environ)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    if not values.get("command"):
        raise ConfigError(
            "Child command is required. Pass it after '--' or set "
            f"{ENV_PREFIX}CHILD_CMD."
        )

    try:
        return ProxyConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid proxy configuration: {problems}") from e


def child_environment(
    overrides: Mapping[str, str] | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the child process.

    The proxy's own environment is inherited, minus its ``MCPDEV_PROXY_*``
    settings, with ``overrides`` applied on top.
    """
    base = os.environ if base is None else base
    env = {k: v for k, v in base.items() if not k.startswith(ENV_PREFIX)}
    if overrides:
        env.update(overrides)
    return env


def configure_logging(level: str = "info", log_file: str | None = None) -> None:
    """Configure root logging for the proxy.

    stdout carries protocol traffic, so logs go to stderr or to ``log_file``.
    """
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        level=LOG_LEVELS.get(level.lower(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[handler],
        force=True,
    )
