"""Classification and forwarding of client requests to the child.

Each request is classified into exactly one ``MessageCategory``. The
forwarding handlers share one contract: they fail fast with
``ChildUnavailable`` unless a ready child is attached, re-issue the request
under a child-side id and return the child's result unmodified.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import ChildUnavailable
from .transport import JsonRpcConnection

logger = logging.getLogger(__name__)

CANCELLED_NOTIFICATION = "notifications/cancelled"


class MessageCategory(str, Enum):
    """Closed set of request families the proxy routes."""

    INITIALIZE = "initialize"
    TOOLS_LIST = "tools_list"
    TOOLS_CALL = "tools_call"
    RESTART_CALL = "restart_call"
    RESOURCES = "resources"
    PROMPTS = "prompts"
    COMPLETION = "completion"
    PING = "ping"
    OTHER = "other"


METHOD_CATEGORIES: dict[str, MessageCategory] = {
    "initialize": MessageCategory.INITIALIZE,
    "tools/list": MessageCategory.TOOLS_LIST,
    "tools/call": MessageCategory.TOOLS_CALL,
    "resources/list": MessageCategory.RESOURCES,
    "resources/templates/list": MessageCategory.RESOURCES,
    "resources/read": MessageCategory.RESOURCES,
    "resources/subscribe": MessageCategory.RESOURCES,
    "resources/unsubscribe": MessageCategory.RESOURCES,
    "prompts/list": MessageCategory.PROMPTS,
    "prompts/get": MessageCategory.PROMPTS,
    "completion/complete": MessageCategory.COMPLETION,
    "ping": MessageCategory.PING,
}


def classify_request(
    message: dict[str, Any], is_restart_call: Callable[[Any], bool]
) -> MessageCategory:
    """Classify a request by method, singling out calls to the restart tool.

    Args:
        message: The client request
        is_restart_call: Predicate over ``tools/call`` params
    """
    category = METHOD_CATEGORIES.get(message.get("method", ""), MessageCategory.OTHER)
    if category is MessageCategory.TOOLS_CALL and is_restart_call(message.get("params")):
        return MessageCategory.RESTART_CALL
    return category


class InFlightTable:
    """Maps request ids on one connection to the ids they were re-issued under."""

    def __init__(self):
        self._entries: dict[int | str, tuple[JsonRpcConnection, int]] = {}

    def add(self, source_id: int | str, target: JsonRpcConnection, target_id: int) -> None:
        self._entries[source_id] = (target, target_id)

    def pop(self, source_id: int | str) -> None:
        self._entries.pop(source_id, None)

    def lookup(self, source_id: Any) -> tuple[JsonRpcConnection, int] | None:
        if not isinstance(source_id, (int, str)) or isinstance(source_id, bool):
            return None
        return self._entries.get(source_id)

    def __len__(self) -> int:
        return len(self._entries)


async def forward_via(
    target: JsonRpcConnection, message: dict[str, Any], table: InFlightTable
) -> Any:
    """Re-issue ``message`` on ``target`` and wait for the result.

    The source id to target id mapping is kept in ``table`` while the
    request is in flight so cancellations can be translated.
    """
    pending = await target.start_request(message["method"], message.get("params"))
    table.add(message["id"], target, pending.request_id)
    try:
        return await target.wait_for(pending)
    finally:
        table.pop(message["id"])


async def forward_cancellation(message: dict[str, Any], table: InFlightTable) -> bool:
    """Translate and forward a ``notifications/cancelled``.

    Returns:
        True if the cancelled request was found and the notification sent
    """
    params = message.get("params")
    if not isinstance(params, dict):
        return False
    entry = table.lookup(params.get("requestId"))
    if entry is None:
        logger.debug(f"Dropping cancellation for unknown request {params.get('requestId')!r}")
        return False
    target, target_id = entry
    await target.send_notification(
        CANCELLED_NOTIFICATION, {**params, "requestId": target_id}
    )
    return True


class RequestDispatcher:
    """Forwards client requests and notifications to the ready child.

    Args:
        get_connection: Returns the child connection when the child is
            ready, None otherwise
    """

    def __init__(self, get_connection: Callable[[], JsonRpcConnection | None]):
        self._get_connection = get_connection
        self.in_flight = InFlightTable()
        self._handlers: dict[MessageCategory, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            MessageCategory.INITIALIZE: self.forward_request,
            MessageCategory.TOOLS_LIST: self.forward_request,
            MessageCategory.TOOLS_CALL: self.forward_tool_call,
            MessageCategory.RESOURCES: self.forward_resource_request,
            MessageCategory.PROMPTS: self.forward_prompt_request,
            MessageCategory.COMPLETION: self.forward_completion,
            MessageCategory.PING: self.forward_ping,
            MessageCategory.OTHER: self.forward_request,
        }

    def handler_for(
        self, category: MessageCategory
    ) -> Callable[[dict[str, Any]], Awaitable[Any]]:
        """Handler for a forwardable category.

        Raises:
            KeyError: For ``RESTART_CALL``, which the proxy handles itself
        """
        return self._handlers[category]

    async def forward_tool_call(self, message: dict[str, Any]) -> Any:
        params = message.get("params") or {}
        logger.debug(f"Forwarding tool call: {params.get('name')}")
        return await self._forward(message)

    async def forward_resource_request(self, message: dict[str, Any]) -> Any:
        params = message.get("params") or {}
        if "uri" in params:
            logger.debug(f"Forwarding {message['method']} for {params['uri']}")
        else:
            logger.debug(f"Forwarding {message['method']}")
        return await self._forward(message)

    async def forward_prompt_request(self, message: dict[str, Any]) -> Any:
        params = message.get("params") or {}
        logger.debug(f"Forwarding {message['method']} {params.get('name', '')}".rstrip())
        return await self._forward(message)

    async def forward_completion(self, message: dict[str, Any]) -> Any:
        logger.debug("Forwarding completion request")
        return await self._forward(message)

    async def forward_ping(self, message: dict[str, Any]) -> Any:
        return await self._forward(message)

    async def forward_request(self, message: dict[str, Any]) -> Any:
        """Pass-through for methods the proxy does not interpret."""
        logger.debug(f"Forwarding {message['method']}")
        return await self._forward(message)

    async def forward_notification(self, message: dict[str, Any]) -> None:
        """Forward a client notification, dropping it while no child is ready."""
        if message.get("method") == CANCELLED_NOTIFICATION:
            await forward_cancellation(message, self.in_flight)
            return
        connection = self._get_connection()
        if connection is None:
            logger.debug(f"Dropping {message.get('method')}: child unavailable")
            return
        await connection.send_notification(message["method"], message.get("params"))

    def _require_child(self, method: str) -> JsonRpcConnection:
        connection = self._get_connection()
        if connection is None:
            raise ChildUnavailable(
                f"Child server is unavailable; cannot handle '{method}'"
            )
        return connection

    async def _forward(self, message: dict[str, Any]) -> Any:
        connection = self._require_child(message["method"])
        return await forward_via(connection, message, self.in_flight)
