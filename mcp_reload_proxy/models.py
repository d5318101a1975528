"""Pydantic models for proxy configuration, restart requests and results."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Variables a restart request may never override in the child environment
DANGEROUS_ENV_VARS = frozenset(
    {"PATH", "LD_LIBRARY_PATH", "DYLD_LIBRARY_PATH", "HOME", "USER"}
)

# Shell metacharacters rejected in child arguments supplied at restart time
UNSAFE_ARG_TOKENS = (";", "&&", "||", "|", ">", "<")


class ProcessState(str, Enum):
    """Lifecycle states of the supervised child process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPING = "stopping"


class ProxyConfig(BaseModel):
    """Runtime configuration of the proxy and the child it supervises."""

    command: str = Field(
        ..., description="Child executable, optionally followed by arguments"
    )
    args: list[str] = Field(
        default_factory=list, description="Arguments passed to the child command"
    )
    working_directory: str | None = Field(
        None, description="Working directory for the child process"
    )
    environment: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variables added to the inherited environment",
    )
    restart_limit: int = Field(
        3, ge=0, le=10, description="Consecutive restart attempts before giving up"
    )
    restart_delay: float = Field(
        1.0, ge=0, le=60, description="Base delay before an automatic restart (seconds)"
    )
    auto_restart: bool = Field(
        True, description="Restart the child automatically after a crash"
    )
    operation_timeout: float = Field(
        30.0, gt=0, le=300, description="Timeout for each forwarded request (seconds)"
    )
    graceful_timeout: float = Field(
        5.0, gt=0, le=60, description="Grace period between SIGTERM and SIGKILL (seconds)"
    )
    restart_reset_window: float = Field(
        30.0,
        ge=0,
        description="Uptime after which a crash no longer counts against the limit (seconds)",
    )
    log_level: str = Field("info", description="Log level for proxy output")
    log_file: str | None = Field(None, description="Optional log file path")

    model_config = {"frozen": False}

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Ensure a child command is present."""
        v = v.strip()
        if not v:
            raise ValueError("Child command cannot be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept MCP and stdlib log level names."""
        v = v.strip().lower()
        valid = {
            "debug",
            "info",
            "notice",
            "warning",
            "error",
            "critical",
            "alert",
            "emergency",
        }
        if v not in valid:
            raise ValueError(f"Invalid log level '{v}'. Valid: {', '.join(sorted(valid))}")
        return v


class ConfigUpdate(BaseModel):
    """Configuration changes applied to the child when it is restarted.

    Environment entries are merged into the current environment, arguments
    replace the current ones.
    """

    environment: dict[str, str] | None = Field(
        None, description="Environment variables to add or override"
    )
    args: list[str] | None = Field(
        None, alias="childArgs", description="Replacement child arguments"
    )
    working_directory: str | None = Field(
        None, alias="workingDirectory", description="New working directory"
    )

    model_config = {"populate_by_name": True, "extra": "forbid"}

    @field_validator("environment")
    @classmethod
    def drop_dangerous_environment(
        cls, v: dict[str, str] | None
    ) -> dict[str, str] | None:
        """Drop variables that would change how the child binary is resolved."""
        if v is None:
            return v
        return {
            key: str(value)
            for key, value in v.items()
            if key.upper() not in DANGEROUS_ENV_VARS
        }

    @field_validator("args")
    @classmethod
    def drop_unsafe_args(cls, v: list[str] | None) -> list[str] | None:
        """Drop arguments containing shell metacharacters."""
        if v is None:
            return v
        return [arg for arg in v if not any(tok in arg for tok in UNSAFE_ARG_TOKENS)]

    def is_empty(self) -> bool:
        return (
            self.environment is None
            and self.args is None
            and self.working_directory is None
        )


class RestartServerArguments(BaseModel):
    """Arguments accepted by the synthetic restart tool. All are optional."""

    force: bool = Field(False, description="Restart even if the child looks healthy")
    config: ConfigUpdate | None = Field(
        None, description="Configuration applied to the restarted child"
    )

    model_config = {"extra": "ignore"}


class ChildServerInfo(BaseModel):
    """Identity and capabilities the child reported during its handshake."""

    name: str = Field("unknown", description="Child server name")
    version: str = Field("unknown", description="Child server version")
    protocol_version: str | None = Field(None, description="Negotiated protocol version")
    capabilities: dict[str, Any] = Field(
        default_factory=dict, description="Capabilities declared by the child"
    )
    instructions: str | None = Field(None, description="Child usage instructions")

    def has_capability(self, name: str) -> bool:
        return self.capabilities.get(name) is not None


class RestartOutcome(BaseModel):
    """Result of a restart request, rendered as an MCP tool result."""

    success: bool
    message: str
    restart_time_ms: int = 0
    restart_count: int = 0
    server_info: ChildServerInfo | None = None
    error_code: int | None = None
    config_applied: bool = False

    def to_tool_result(self) -> dict[str, Any]:
        """Render as a ``tools/call`` result payload."""
        if self.success:
            text = self.message
            text += f"\n\nRestart completed in {self.restart_time_ms}ms"
            if self.server_info is not None:
                text += (
                    f"\nServer: {self.server_info.name} v{self.server_info.version}"
                )
            text += f"\nTotal restarts: {self.restart_count}"
        else:
            text = f"Restart failed: {self.message}"

        structured: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "restartTimeMs": self.restart_time_ms,
            "restartCount": self.restart_count,
        }
        if self.server_info is not None:
            structured["serverInfo"] = {
                "name": self.server_info.name,
                "version": self.server_info.version,
            }
        if self.error_code is not None:
            structured["errorCode"] = self.error_code

        return {
            "content": [{"type": "text", "text": text}],
            "structuredContent": structured,
            "isError": not self.success,
        }
