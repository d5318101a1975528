"""The proxy: one client session in front of a restartable child server."""

import asyncio
import logging
import signal
from typing import Any

from .augmenter import CapabilityAugmenter
from .dispatch import (
    CANCELLED_NOTIFICATION,
    InFlightTable,
    MessageCategory,
    RequestDispatcher,
    classify_request,
    forward_cancellation,
    forward_via,
)
from .errors import ChildUnavailable, Disconnected, ProxyError, error_object_for
from .models import ProcessState, ProxyConfig
from .restart import RestartOrchestrator
from .supervisor import ChildProcessSupervisor, LifecycleEvent, LifecycleEventKind
from .transport import JsonRpcConnection, make_error_response, make_response, open_stdio_streams

logger = logging.getLogger(__name__)


class MCPReloadProxy:
    """Transparent MCP proxy with a restartable child.

    Args:
        config: Proxy and child configuration
        client_streams: Reader/writer for the client side; the proxy's own
            stdin/stdout are used when omitted
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        client_streams: tuple[asyncio.StreamReader, Any] | None = None,
    ):
        self.config = config
        self.supervisor = ChildProcessSupervisor(config)
        self.augmenter = CapabilityAugmenter()
        self.client = JsonRpcConnection(
            "client",
            request_timeout=config.operation_timeout,
            on_request=self._handle_client_request,
            on_notification=self._handle_client_notification,
            on_close=self._handle_client_closed,
        )
        self.orchestrator = RestartOrchestrator(
            self.supervisor,
            self.augmenter,
            self.client,
            self._connect_child,
            handshake_timeout=config.operation_timeout,
        )
        self.dispatcher = RequestDispatcher(self.orchestrator.ready_connection)

        # Child-originated requests re-issued to the client
        self._upstream = InFlightTable()
        self._client_streams = client_streams
        self._lifecycle_task: asyncio.Task | None = None
        self._signal_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self._stopping = False

    async def start(self) -> None:
        """Start the child and begin serving the client.

        Raises:
            SpawnError: If the child cannot be started
        """
        process = await self.supervisor.start()
        self.orchestrator.attach(process)
        self._lifecycle_task = asyncio.create_task(
            self._lifecycle_loop(), name="proxy-lifecycle"
        )

        if self._client_streams is None:
            self._client_streams = await open_stdio_streams()
        reader, writer = self._client_streams
        self.client.attach(reader, writer)
        logger.info(f"Proxy started for child PID {process.pid}")

    async def run(self) -> None:
        """Start, serve until a signal or client EOF, then shut down."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._schedule_stop, sig)
            except (NotImplementedError, RuntimeError):
                pass
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    async def wait_closed(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop the child and close both connections. Idempotent."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info("Shutting down proxy")

        task = self._lifecycle_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self.orchestrator.detach("proxy shutting down")
        await self.supervisor.shutdown()
        await self.client.detach("proxy shutting down")
        self._stopped.set()

    def _schedule_stop(self, sig: signal.Signals) -> None:
        if self._signal_task is None:
            self._signal_task = asyncio.create_task(self._on_signal(sig), name="proxy-signal")

    async def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}")
        await self.stop()

    def _connect_child(self, process: asyncio.subprocess.Process) -> JsonRpcConnection:
        connection = JsonRpcConnection(
            f"child-{process.pid}",
            request_timeout=self.config.operation_timeout,
            on_notification=self._handle_child_notification,
        )
        connection.on_request = lambda message: self._handle_child_request(
            connection, message
        )
        connection.attach(process.stdout, process.stdin)
        return connection

    async def _handle_client_request(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        category = classify_request(message, self.augmenter.is_restart_call)

        if category is MessageCategory.RESTART_CALL:
            params = message.get("params") or {}
            outcome = await self.orchestrator.handle_restart_call(params.get("arguments"))
            await self._reply(make_response(request_id, outcome.to_tool_result()))
            if outcome.success:
                await self.orchestrator.notify_capabilities_changed()
            return

        try:
            result = await self._route(category, message)
        except ProxyError as e:
            if isinstance(e, (ChildUnavailable, Disconnected)):
                logger.info(f"{message['method']} failed: {e}")
            else:
                logger.debug(f"{message['method']} failed: {e}")
            response = make_error_response(request_id, error_object_for(e))
        else:
            response = make_response(request_id, result)
        await self._reply(response)

    async def _route(self, category: MessageCategory, message: dict[str, Any]) -> Any:
        params = message.get("params")

        if category is MessageCategory.INITIALIZE:
            if isinstance(params, dict):
                self.orchestrator.client_init_params = params
            result = await self.dispatcher.forward_request(message)
            self.orchestrator.child_info = self.augmenter.extract_child_info(result)
            return self.augmenter.augment_initialize_result(result)

        if category is MessageCategory.TOOLS_LIST:
            first_page = not (isinstance(params, dict) and params.get("cursor"))
            try:
                result = await self.dispatcher.forward_request(message)
            except ChildUnavailable:
                if not first_page:
                    raise
                # Keep the restart tool reachable while the child is down
                result = {"tools": []}
            return self.augmenter.augment_tools_list(result, first_page=first_page)

        return await self.dispatcher.handler_for(category)(message)

    async def _reply(self, response: dict[str, Any]) -> None:
        try:
            await self.client.send_message(response)
        except Disconnected as e:
            logger.debug(f"Dropping response for id {response.get('id')!r}: {e}")

    async def _handle_client_notification(self, message: dict[str, Any]) -> None:
        try:
            await self.dispatcher.forward_notification(message)
        except Disconnected as e:
            logger.debug(f"Dropping {message.get('method')}: {e}")

    async def _handle_client_closed(self, connection: JsonRpcConnection) -> None:
        logger.info("Client disconnected")
        await self.stop()

    async def _handle_child_request(
        self, connection: JsonRpcConnection, message: dict[str, Any]
    ) -> None:
        try:
            result = await forward_via(self.client, message, self._upstream)
        except ProxyError as e:
            await connection.respond_error(message["id"], error_object_for(e))
        else:
            await connection.respond(message["id"], result)

    async def _handle_child_notification(self, message: dict[str, Any]) -> None:
        try:
            if message.get("method") == CANCELLED_NOTIFICATION:
                await forward_cancellation(message, self._upstream)
            else:
                await self.client.send_notification(message["method"], message.get("params"))
        except Disconnected as e:
            logger.debug(f"Dropping child notification {message.get('method')}: {e}")

    async def _lifecycle_loop(self) -> None:
        while True:
            event = await self.supervisor.events.get()
            try:
                await self._handle_lifecycle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling lifecycle event {event.kind.value}: {e}", exc_info=True)

    async def _handle_lifecycle_event(self, event: LifecycleEvent) -> None:
        if event.kind is LifecycleEventKind.CRASHED:
            await self.orchestrator.detach(
                f"child process exited ({event.detail})", pid=event.pid
            )
        elif event.kind is LifecycleEventKind.RESTARTED and event.automatic:
            process = self.supervisor.process
            if process is None or process.pid != event.pid:
                return
            try:
                recovered = await self.orchestrator.recover_after_crash(process)
            except ProxyError as e:
                await self._abandon_child(
                    process, f"Child restarted after a crash but did not recover: {e}"
                )
                return
            if recovered:
                logger.info(f"Child recovered after crash (PID: {process.pid})")
                await self.orchestrator.notify_capabilities_changed()
        elif event.kind is LifecycleEventKind.EXHAUSTED:
            if self.supervisor.state is not ProcessState.STOPPED:
                return
            await self.orchestrator.detach("child process stopped")
            await self.orchestrator.notify_degraded(event.detail or "Child server stopped")

    async def _abandon_child(self, process: asyncio.subprocess.Process, detail: str) -> None:
        """Stop an unusable child and leave the restart tool as the way back."""
        logger.error(detail)
        if self.orchestrator.in_progress or self.supervisor.pid != process.pid:
            # A manual restart has already replaced it
            return
        await self.supervisor.stop()
        await self.orchestrator.detach("child process stopped")
        await self.orchestrator.notify_degraded(detail)
