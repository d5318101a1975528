"""MCP Reload Proxy - Transparent stdio proxy that hot-restarts MCP servers."""

__version__ = "0.1.0"

from .augmenter import CapabilityAugmenter
from .errors import (
    ChildUnavailable,
    Disconnected,
    MalformedMessage,
    ProxyError,
    RemoteError,
    RequestTimeout,
    RestartInProgress,
    RestartLimitExceeded,
    SpawnError,
)
from .models import (
    ChildServerInfo,
    ConfigUpdate,
    ProcessState,
    ProxyConfig,
    RestartOutcome,
    RestartServerArguments,
)
from .proxy import MCPReloadProxy
from .restart import RestartOrchestrator
from .supervisor import ChildProcessSupervisor
from .transport import JsonRpcConnection

__all__ = [
    "CapabilityAugmenter",
    "ChildProcessSupervisor",
    "ChildServerInfo",
    "ChildUnavailable",
    "ConfigUpdate",
    "Disconnected",
    "JsonRpcConnection",
    "MCPReloadProxy",
    "MalformedMessage",
    "ProcessState",
    "ProxyConfig",
    "ProxyError",
    "RemoteError",
    "RequestTimeout",
    "RestartInProgress",
    "RestartLimitExceeded",
    "RestartOrchestrator",
    "RestartOutcome",
    "RestartServerArguments",
    "SpawnError",
]
