"""Augmentation of the child's handshake and tool listing.

All functions here are pure: they deep-copy their input and return a new
payload, so augmenting the same response twice gives the same result.
"""

import copy
import logging
from typing import Any

from .models import ChildServerInfo

logger = logging.getLogger(__name__)

RESTART_SERVER_TOOL_NAME = "restart_server"
DEV_SUFFIX = "-dev"

PROXY_INSTRUCTIONS = (
    "This server runs behind a development proxy. Call the "
    f"'{RESTART_SERVER_TOOL_NAME}' tool to restart it after code changes "
    "without losing the client session. The tool list is refreshed "
    "automatically after each restart."
)

RESTART_SERVER_TOOL: dict[str, Any] = {
    "name": RESTART_SERVER_TOOL_NAME,
    "description": (
        "Restart the underlying MCP server process to pick up code changes. "
        "The client session is preserved; in-flight requests to the old "
        "process fail and should be retried."
    ),
    "inputSchema": {
        "type": "object",
        "properties": {
            "force": {
                "type": "boolean",
                "description": "Restart even if the server looks healthy",
                "default": False,
            },
            "config": {
                "type": "object",
                "description": "Configuration applied to the restarted server",
                "properties": {
                    "environment": {
                        "type": "object",
                        "description": "Environment variables to add or override",
                        "additionalProperties": {"type": "string"},
                    },
                    "childArgs": {
                        "type": "array",
                        "description": "Replacement command line arguments",
                        "items": {"type": "string"},
                    },
                    "workingDirectory": {
                        "type": "string",
                        "description": "New working directory",
                    },
                },
                "additionalProperties": False,
            },
        },
        "required": [],
    },
}


class CapabilityAugmenter:
    """Adds the synthetic restart tool to what the child advertises."""

    def __init__(self, tool_name: str = RESTART_SERVER_TOOL_NAME):
        self.tool_name = tool_name

    def restart_tool(self) -> dict[str, Any]:
        """A fresh copy of the restart tool descriptor."""
        tool = copy.deepcopy(RESTART_SERVER_TOOL)
        tool["name"] = self.tool_name
        return tool

    def augment_initialize_result(self, result: Any) -> Any:
        """Augment the child's ``initialize`` result.

        The copy advertises ``tools.listChanged``, marks the server name and
        version with a ``-dev`` suffix and appends the proxy's instructions.

        Args:
            result: The child's ``initialize`` result

        Returns:
            Augmented deep copy, or an unmodified copy if the result is not
            an object
        """
        augmented = copy.deepcopy(result)
        if not isinstance(augmented, dict):
            logger.warning("Child initialize result is not an object; forwarding as-is")
            return augmented

        capabilities = augmented.get("capabilities")
        if not isinstance(capabilities, dict):
            capabilities = {}
        tools = capabilities.get("tools")
        if not isinstance(tools, dict):
            tools = {}
        capabilities["tools"] = {**tools, "listChanged": True}
        augmented["capabilities"] = capabilities

        server_info = augmented.get("serverInfo")
        if not isinstance(server_info, dict):
            server_info = {}
        server_info["name"] = with_dev_suffix(server_info.get("name"))
        server_info["version"] = with_dev_suffix(server_info.get("version"))
        augmented["serverInfo"] = server_info

        augmented["instructions"] = combine_instructions(augmented.get("instructions"))
        return augmented

    def augment_tools_list(self, result: Any, *, first_page: bool = True) -> Any:
        """Append the restart tool to a ``tools/list`` result.

        A child tool with the same name is replaced, so there is never more
        than one restart tool. Continuation pages are only copied.

        Args:
            result: The child's ``tools/list`` result
            first_page: False when the request carried a pagination cursor
        """
        augmented = copy.deepcopy(result) if isinstance(result, dict) else {}
        tools = augmented.get("tools")
        if not isinstance(tools, list):
            tools = []
        if not first_page:
            augmented["tools"] = tools
            return augmented

        kept = [
            tool
            for tool in tools
            if not (isinstance(tool, dict) and tool.get("name") == self.tool_name)
        ]
        if len(kept) != len(tools):
            logger.warning(
                f"Child declares its own '{self.tool_name}' tool; the proxy tool shadows it"
            )
        kept.append(self.restart_tool())
        augmented["tools"] = kept
        return augmented

    def is_restart_call(self, params: Any) -> bool:
        """Whether ``tools/call`` params target the restart tool."""
        return isinstance(params, dict) and params.get("name") == self.tool_name

    def extract_child_info(self, result: Any) -> ChildServerInfo:
        """Read the child's identity from its ``initialize`` result."""
        if not isinstance(result, dict):
            return ChildServerInfo()
        server_info = result.get("serverInfo")
        if not isinstance(server_info, dict):
            server_info = {}
        capabilities = result.get("capabilities")
        instructions = result.get("instructions")
        return ChildServerInfo(
            name=str(server_info.get("name") or "unknown"),
            version=str(server_info.get("version") or "unknown"),
            protocol_version=result.get("protocolVersion"),
            capabilities=capabilities if isinstance(capabilities, dict) else {},
            instructions=instructions if isinstance(instructions, str) else None,
        )


def with_dev_suffix(value: Any) -> str:
    """Append ``-dev`` unless already present.

    Examples:
        >>> with_dev_suffix("weather")
        'weather-dev'
        >>> with_dev_suffix("weather-dev")
        'weather-dev'
        >>> with_dev_suffix("")
        'unknown-dev'
    """
    text = str(value).strip() if value is not None else ""
    if not text:
        return f"unknown{DEV_SUFFIX}"
    if text.endswith(DEV_SUFFIX):
        return text
    return f"{text}{DEV_SUFFIX}"


def combine_instructions(child_instructions: Any) -> str:
    """Append the proxy's instructions to the child's, once."""
    if not isinstance(child_instructions, str) or not child_instructions.strip():
        return PROXY_INSTRUCTIONS
    if PROXY_INSTRUCTIONS in child_instructions:
        return child_instructions
    return f"{child_instructions}\n\n--- Development Proxy ---\n{PROXY_INSTRUCTIONS}"
