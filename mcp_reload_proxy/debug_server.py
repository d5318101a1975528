"""FastMCP server exposing child inspection as MCP tools.

Each tool starts the configured child, runs one operation against it and
returns the JSON result envelope. Useful for debugging a server from inside
an MCP client without wiring it up as a tool provider.
"""

import json
import logging
import time
from typing import Any, Awaitable, Callable

from fastmcp import FastMCP
from pydantic import Field

from .inspector import ChildInspector, format_result, run_inspection
from .models import ProxyConfig

logger = logging.getLogger(__name__)

mcp = FastMCP(
    name="mcp-reload-proxy-inspector",
    instructions="""
    Inspect the configured child MCP server.

    Every tool starts a fresh child process, performs the MCP handshake,
    runs one operation and stops the child again. Results are JSON objects
    with "success", "data" or "error", and "metadata".
    """,
)

_config: ProxyConfig | None = None


def configure(config: ProxyConfig) -> None:
    """Set the child configuration used by the inspection tools."""
    global _config
    _config = config


async def _inspect(
    command: str, operation: Callable[[ChildInspector], Awaitable[Any]]
) -> str:
    started = time.perf_counter()
    if _config is None:
        envelope = format_result(
            command, started, error=RuntimeError("No child server configured")
        )
        return json.dumps(envelope, indent=2)

    try:
        data = await run_inspection(_config, operation)
    except Exception as e:
        logger.warning(f"Inspection '{command}' failed: {e}")
        envelope = format_result(command, started, error=e)
    else:
        envelope = format_result(command, started, data=data)
    return json.dumps(envelope, indent=2, default=str)


@mcp.tool(name="inspect_server_info")
async def inspect_server_info() -> str:
    """Get the child's server info, protocol version and capabilities."""
    return await _inspect("server-info", lambda i: i.get_server_info())


@mcp.tool(name="inspect_list_tools")
async def inspect_list_tools() -> str:
    """List the tools the child exposes."""
    return await _inspect("list-tools", lambda i: i.list_tools())


@mcp.tool(name="inspect_call_tool")
async def inspect_call_tool(
    name: str = Field(..., description="Name of the child tool to call"),
    arguments: dict[str, Any] | None = Field(
        None, description="Arguments passed to the tool"
    ),
) -> str:
    """Call one of the child's tools and return its raw result."""
    return await _inspect("call-tool", lambda i: i.call_tool(name, arguments or {}))


@mcp.tool(name="inspect_list_resources")
async def inspect_list_resources() -> str:
    """List the resources the child exposes."""
    return await _inspect("list-resources", lambda i: i.list_resources())


@mcp.tool(name="inspect_read_resource")
async def inspect_read_resource(
    uri: str = Field(..., description="URI of the resource to read"),
) -> str:
    """Read a resource from the child."""
    return await _inspect("read-resource", lambda i: i.read_resource(uri))


@mcp.tool(name="inspect_list_prompts")
async def inspect_list_prompts() -> str:
    """List the prompts the child exposes."""
    return await _inspect("list-prompts", lambda i: i.list_prompts())


@mcp.tool(name="inspect_get_prompt")
async def inspect_get_prompt(
    name: str = Field(..., description="Name of the prompt"),
    arguments: dict[str, str] | None = Field(
        None, description="Prompt arguments"
    ),
) -> str:
    """Render one of the child's prompts."""
    return await _inspect("get-prompt", lambda i: i.get_prompt(name, arguments))


@mcp.tool(name="inspect_ping")
async def inspect_ping() -> str:
    """Check that the child answers and measure the round trip."""
    return await _inspect("ping", lambda i: i.ping())


def run(config: ProxyConfig) -> None:
    """Serve the inspection tools over stdio."""
    configure(config)
    logger.info(f"Starting inspection server for '{config.command}'")
    mcp.run()
