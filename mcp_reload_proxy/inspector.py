"""One-shot inspection of a child MCP server.

``ChildInspector`` starts the child, performs the handshake, runs a single
operation and shuts the child down again. It backs the ``inspect`` CLI and
the inspection MCP server.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from .errors import ErrorCode, ProxyError, RemoteError, error_object_for
from .models import ProxyConfig
from .restart import DEFAULT_INITIALIZE_PARAMS
from .supervisor import ChildProcessSupervisor
from .transport import JsonRpcConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

INSPECTOR_CLIENT_NAME = "mcp-reload-proxy-inspector"


class ChildInspector:
    """Async context manager holding a short-lived child connection."""

    def __init__(self, config: ProxyConfig):
        self.config = config.model_copy(update={"auto_restart": False})
        self.supervisor = ChildProcessSupervisor(self.config)
        self.connection: JsonRpcConnection | None = None
        self.initialize_result: dict[str, Any] = {}

    async def __aenter__(self) -> "ChildInspector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Start the child and complete the MCP handshake."""
        process = await self.supervisor.start()
        connection = JsonRpcConnection(
            f"inspect-{process.pid}", request_timeout=self.config.operation_timeout
        )
        connection.attach(process.stdout, process.stdin)
        self.connection = connection

        params = {
            **DEFAULT_INITIALIZE_PARAMS,
            "clientInfo": {
                **DEFAULT_INITIALIZE_PARAMS["clientInfo"],
                "name": INSPECTOR_CLIENT_NAME,
            },
        }
        try:
            result = await connection.send_request("initialize", params)
            await connection.send_notification("notifications/initialized")
        except BaseException:
            await self.disconnect()
            raise
        self.initialize_result = result if isinstance(result, dict) else {}

    async def disconnect(self) -> None:
        connection = self.connection
        self.connection = None
        if connection is not None:
            await connection.detach("inspection finished")
        await self.supervisor.stop()

    async def request(self, method: str, params: Any = None) -> Any:
        if self.connection is None:
            raise RuntimeError("Inspector is not connected")
        return await self.connection.send_request(method, params)

    async def get_server_info(self) -> dict[str, Any]:
        result = self.initialize_result
        return {
            "serverInfo": result.get("serverInfo", {}),
            "protocolVersion": result.get("protocolVersion"),
            "capabilities": result.get("capabilities", {}),
            "instructions": result.get("instructions"),
        }

    async def list_tools(self) -> list[dict[str, Any]]:
        return await self._list("tools/list", "tools")

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        return await self.request("tools/call", {"name": name, "arguments": arguments or {}})

    async def list_resources(self) -> list[dict[str, Any]]:
        return await self._list("resources/list", "resources")

    async def read_resource(self, uri: str) -> Any:
        return await self.request("resources/read", {"uri": uri})

    async def list_prompts(self) -> list[dict[str, Any]]:
        return await self._list("prompts/list", "prompts")

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> Any:
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.request("prompts/get", params)

    async def ping(self) -> dict[str, Any]:
        started = time.perf_counter()
        await self.request("ping")
        return {
            "alive": True,
            "latencyMs": round((time.perf_counter() - started) * 1000, 2),
        }

    async def _list(self, method: str, key: str) -> list[dict[str, Any]]:
        """Collect every page of a list method.

        Servers that do not implement the method report an empty list.
        """
        items: list[dict[str, Any]] = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else None
            try:
                result = await self.request(method, params)
            except RemoteError as e:
                if e.code == ErrorCode.METHOD_NOT_FOUND:
                    logger.debug(f"Child does not implement {method}")
                    return items
                raise
            result = result if isinstance(result, dict) else {}
            items.extend(result.get(key) or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return items


async def run_inspection(
    config: ProxyConfig, operation: Callable[[ChildInspector], Awaitable[T]]
) -> T:
    """Connect, run ``operation`` and always disconnect."""
    async with ChildInspector(config) as inspector:
        return await operation(inspector)


def format_result(
    command: str,
    started: float,
    *,
    data: Any = None,
    error: BaseException | None = None,
) -> dict[str, Any]:
    """Envelope for inspection output.

    Args:
        command: Operation name
        started: ``time.perf_counter()`` value when the operation began
        data: Operation result on success
        error: Exception on failure

    Returns:
        ``{"success", "data" | "error", "metadata"}`` dictionary
    """
    metadata = {
        "command": command,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "duration": int((time.perf_counter() - started) * 1000),
    }
    if error is None:
        return {"success": True, "data": data, "metadata": metadata}

    if isinstance(error, ProxyError):
        details = error_object_for(error)
    else:
        details = {"code": ErrorCode.INTERNAL_ERROR, "message": str(error) or type(error).__name__}
    details.setdefault("data", None)
    return {
        "success": False,
        "error": {
            "code": details["code"],
            "message": details["message"],
            "details": details["data"],
        },
        "metadata": metadata,
    }
