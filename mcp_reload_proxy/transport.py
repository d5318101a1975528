"""Line-delimited JSON-RPC 2.0 transport with request/response correlation.

A ``JsonRpcConnection`` wraps one duplex stream pair. Outbound requests get
ids from a per-connection counter and wait on a future until the matching
response, a timeout, or a disconnect resolves them. Inbound requests are
handed to a handler in their own task, inbound notifications are handled in
arrival order.
"""

import asyncio
import itertools
import json
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import (
    Disconnected,
    ErrorCode,
    MalformedMessage,
    RemoteError,
    RequestTimeout,
    error_object_for,
)

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

# MCP payloads (base64 resources, large tool results) can be big
STDIO_STREAM_LIMIT = 8 * 1024 * 1024

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
CloseHandler = Callable[["JsonRpcConnection"], Awaitable[None]]


class MessageKind(str, Enum):
    """Top-level JSON-RPC message kinds."""

    REQUEST = "request"
    NOTIFICATION = "notification"
    RESPONSE = "response"


def classify_message(message: Any) -> MessageKind:
    """Determine the kind of a decoded JSON-RPC message.

    Args:
        message: Decoded JSON value

    Returns:
        The message kind

    Raises:
        MalformedMessage: If the value is not a JSON-RPC message
    """
    if not isinstance(message, dict):
        raise MalformedMessage(f"Expected a JSON object, got {type(message).__name__}")

    if "method" in message:
        if not isinstance(message["method"], str):
            raise MalformedMessage("Message 'method' must be a string")
        if "id" in message:
            if not _valid_id(message["id"]):
                raise MalformedMessage(f"Invalid request id: {message['id']!r}")
            return MessageKind.REQUEST
        return MessageKind.NOTIFICATION

    if "id" in message and ("result" in message or "error" in message):
        return MessageKind.RESPONSE

    raise MalformedMessage("Message is neither a request, notification nor response")


def _valid_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def decode_message(line: bytes | str) -> Any:
    """Decode one line of JSON.

    Raises:
        MalformedMessage: If the line is not valid JSON
    """
    try:
        return json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e


def encode_message(message: dict[str, Any]) -> bytes:
    """Encode a message as one newline-terminated line.

    Non-ASCII text is written as ``\\u`` escapes so lone surrogates from the
    peer survive the round trip.
    """
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("ascii")


def make_request(
    request_id: int | str, method: str, params: Any = None
) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: Any = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_response(request_id: int | str | None, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error_response(
    request_id: int | str | None, error: dict[str, Any]
) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


@dataclass
class PendingRequest:
    """An outbound request awaiting its response."""

    request_id: int
    method: str
    issued_at: float
    timeout: float | None
    future: asyncio.Future

    @property
    def deadline(self) -> float | None:
        if self.timeout is None:
            return None
        return self.issued_at + self.timeout

    def resolve(self, result: Any) -> bool:
        """Complete with a result. Returns False if already resolved."""
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Complete with an error. Returns False if already resolved."""
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True


class JsonRpcConnection:
    """One JSON-RPC peer reachable over a reader/writer pair.

    Handlers are plain attributes so callers can wire them after
    construction:

    * ``on_request(message)`` handles an inbound request and must answer it
      with ``respond``/``respond_error``. If it raises, an internal error
      response is sent.
    * ``on_notification(message)`` handles an inbound notification.
    * ``on_close(connection)`` runs when the peer closes the stream.
    """

    def __init__(
        self,
        name: str,
        *,
        request_timeout: float | None = 30.0,
        on_request: MessageHandler | None = None,
        on_notification: MessageHandler | None = None,
        on_close: CloseHandler | None = None,
    ):
        self.name = name
        self.request_timeout = request_timeout
        self.on_request = on_request
        self.on_notification = on_notification
        self.on_close = on_close

        self._reader: asyncio.StreamReader | None = None
        self._writer: Any = None
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._read_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def attach(self, reader: asyncio.StreamReader, writer: Any) -> None:
        """Bind the connection to a stream pair and start reading.

        Raises:
            RuntimeError: If already attached or previously detached
        """
        if self._writer is not None or self._closed:
            raise RuntimeError(f"Connection {self.name} cannot be attached twice")
        self._reader = reader
        self._writer = writer
        self._read_task = asyncio.create_task(
            self._read_loop(reader), name=f"jsonrpc-{self.name}-reader"
        )
        logger.debug(f"Connection {self.name} attached")

    async def start_request(
        self, method: str, params: Any = None, *, timeout: float | None = None
    ) -> PendingRequest:
        """Register a pending request and write it to the peer.

        Args:
            method: JSON-RPC method name
            params: Request params, omitted from the frame when None
            timeout: Seconds to wait for a response (defaults to the
                connection's ``request_timeout``)

        Returns:
            The pending request, to be awaited with ``wait_for``

        Raises:
            Disconnected: If the connection is not attached
        """
        if not self.connected:
            raise Disconnected(f"Connection {self.name} is not attached")

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        pending = PendingRequest(
            request_id=request_id,
            method=method,
            issued_at=loop.time(),
            timeout=self.request_timeout if timeout is None else timeout,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending

        try:
            await self.send_message(make_request(request_id, method, params))
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        return pending

    async def wait_for(self, pending: PendingRequest) -> Any:
        """Wait for a pending request to resolve.

        Returns:
            The ``result`` member of the response

        Raises:
            RemoteError: If the peer answered with an error
            RequestTimeout: If the deadline passed first
            Disconnected: If the connection closed first
        """
        remaining = None
        if pending.deadline is not None:
            remaining = max(0.0, pending.deadline - asyncio.get_running_loop().time())

        try:
            return await asyncio.wait_for(pending.future, timeout=remaining)
        except asyncio.TimeoutError:
            raise RequestTimeout(
                f"Request '{pending.method}' (id {pending.request_id}) to "
                f"{self.name} timed out after {pending.timeout:g}s"
            ) from None
        finally:
            self._pending.pop(pending.request_id, None)

    async def send_request(
        self, method: str, params: Any = None, *, timeout: float | None = None
    ) -> Any:
        """Send a request and wait for its result."""
        pending = await self.start_request(method, params, timeout=timeout)
        return await self.wait_for(pending)

    async def send_notification(self, method: str, params: Any = None) -> None:
        await self.send_message(make_notification(method, params))

    async def respond(self, request_id: int | str, result: Any) -> None:
        await self.send_message(make_response(request_id, result))

    async def respond_error(
        self, request_id: int | str | None, error: dict[str, Any]
    ) -> None:
        await self.send_message(make_error_response(request_id, error))

    async def send_message(self, message: dict[str, Any]) -> None:
        """Write one framed message.

        Raises:
            Disconnected: If the connection is closed or the write fails
        """
        if not self.connected:
            raise Disconnected(f"Connection {self.name} is not attached")

        data = encode_message(message)
        async with self._write_lock:
            writer = self._writer
            if writer is None:
                raise Disconnected(f"Connection {self.name} is not attached")
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, RuntimeError) as e:
                raise Disconnected(f"Write to {self.name} failed: {e}") from e

    async def detach(self, reason: str = "connection detached") -> None:
        """Stop reading, fail pending requests and close the writer.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Detaching connection {self.name}: {reason}")

        read_task = self._read_task
        if read_task is not None and read_task is not asyncio.current_task():
            await self._cancel_tasks([read_task])
        else:
            await self._cancel_tasks([])

        self._fail_pending(reason)
        await self._close_writer()

    async def _cancel_tasks(self, tasks: list[asyncio.Task]) -> None:
        """Cancel ``tasks`` and every inbound request handler still running."""
        current = asyncio.current_task()
        tasks = tasks + [t for t in self._request_tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.fail(
                Disconnected(
                    f"Request '{request.method}' (id {request.request_id}) "
                    f"abandoned: {reason}"
                )
            )
        if pending:
            logger.info(f"Failed {len(pending)} pending request(s) on {self.name}: {reason}")

    async def _close_writer(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, RuntimeError, OSError) as e:
            logger.debug(f"Ignoring error while closing {self.name} writer: {e}")

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # Line exceeded the stream limit; readline already discarded it
                    logger.warning(f"Discarding oversized message from {self.name}: {e}")
                    continue
                if not line:
                    break
                await self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.warning(f"Read from {self.name} failed: {e}")

        if self._closed:
            return
        logger.info(f"Peer closed connection {self.name}")
        self._closed = True
        await self._cancel_tasks([])
        self._fail_pending("peer closed the connection")
        await self._close_writer()
        if self.on_close is not None:
            try:
                await self.on_close(self)
            except Exception as e:
                logger.error(f"Close handler for {self.name} failed: {e}", exc_info=True)

    async def _handle_line(self, line: bytes) -> None:
        line = line.strip()
        if not line:
            return
        try:
            decoded = decode_message(line)
        except MalformedMessage as e:
            logger.warning(f"Skipping malformed line from {self.name}: {e}")
            return

        messages = decoded if isinstance(decoded, list) else [decoded]
        for message in messages:
            await self._dispatch(message)

    async def _dispatch(self, message: Any) -> None:
        try:
            kind = classify_message(message)
        except MalformedMessage as e:
            logger.warning(f"Skipping invalid message from {self.name}: {e}")
            return

        if kind is MessageKind.RESPONSE:
            self._resolve(message)
        elif kind is MessageKind.REQUEST:
            task = asyncio.create_task(self._run_request_handler(message))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
        elif self.on_notification is not None:
            try:
                await self.on_notification(message)
            except Exception as e:
                logger.error(
                    f"Notification handler on {self.name} failed for "
                    f"{message.get('method')}: {e}",
                    exc_info=True,
                )

    def _resolve(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        pending = self._pending.pop(request_id, None) if _valid_id(request_id) else None
        if pending is None:
            logger.debug(
                f"Dropping response from {self.name} for unknown or expired id {request_id!r}"
            )
            return

        error = message.get("error")
        if error is not None:
            pending.fail(RemoteError.from_error_object(error))
        else:
            pending.resolve(message.get("result"))

    async def _run_request_handler(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        if self.on_request is None:
            error = {
                "code": ErrorCode.METHOD_NOT_FOUND,
                "message": f"Method not found: {message['method']}",
            }
            await self._respond_quietly(request_id, error)
            return

        try:
            await self.on_request(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Request handler on {self.name} failed for {message['method']}: {e}",
                exc_info=True,
            )
            await self._respond_quietly(request_id, error_object_for(e))

    async def _respond_quietly(
        self, request_id: int | str, error: dict[str, Any]
    ) -> None:
        try:
            await self.respond_error(request_id, error)
        except Disconnected as e:
            logger.debug(f"Could not send error response on {self.name}: {e}")


async def open_stdio_streams(
    limit: int = STDIO_STREAM_LIMIT,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap this process's stdin/stdout as asyncio streams."""
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer
    )

    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout.buffer
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer
