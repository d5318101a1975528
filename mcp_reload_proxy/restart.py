"""Coordination of child restarts with the client session.

The orchestrator owns the child-facing connection. A restart detaches it
(failing whatever was in flight), asks the supervisor for a new process,
attaches a fresh connection and replays the client's handshake so the new
child is in the same protocol state as the old one.
"""

import asyncio
import logging
from typing import Any, Callable

from pydantic import ValidationError

from . import __version__
from .augmenter import CapabilityAugmenter
from .errors import (
    ErrorCode,
    InvalidRestartConfig,
    ProxyError,
    RestartFailed,
    RestartInProgress,
)
from .models import ChildServerInfo, ProcessState, RestartOutcome, RestartServerArguments
from .supervisor import ChildProcessSupervisor
from .transport import JsonRpcConnection

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

DEFAULT_INITIALIZE_PARAMS: dict[str, Any] = {
    "protocolVersion": PROTOCOL_VERSION,
    "capabilities": {},
    "clientInfo": {"name": "mcp-reload-proxy", "version": __version__},
}

ConnectionFactory = Callable[[asyncio.subprocess.Process], JsonRpcConnection]


class RestartOrchestrator:
    """Runs restarts one at a time and keeps the child connection current.

    Args:
        supervisor: Supervisor owning the child process
        augmenter: Used to read the child's identity from its handshake
        client: Client-facing connection, used for notifications
        connection_factory: Builds a child connection bound to a process
        handshake_timeout: Timeout for the replayed ``initialize`` (seconds)
    """

    def __init__(
        self,
        supervisor: ChildProcessSupervisor,
        augmenter: CapabilityAugmenter,
        client: JsonRpcConnection,
        connection_factory: ConnectionFactory,
        *,
        handshake_timeout: float = 30.0,
    ):
        self.supervisor = supervisor
        self.augmenter = augmenter
        self.client = client
        self.connection_factory = connection_factory
        self.handshake_timeout = handshake_timeout

        self.connection: JsonRpcConnection | None = None
        self.child_info: ChildServerInfo | None = None
        self.client_init_params: dict[str, Any] | None = None
        self.restart_count = 0

        self._connection_pid: int | None = None
        self._ready = False
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def ready_connection(self) -> JsonRpcConnection | None:
        """The child connection if the child can take requests, else None."""
        connection = self.connection
        if (
            self._ready
            and not self._in_progress
            and connection is not None
            and connection.connected
            and self.supervisor.state is ProcessState.RUNNING
        ):
            return connection
        return None

    def attach(self, process: asyncio.subprocess.Process, *, ready: bool = True) -> JsonRpcConnection:
        """Bind a new child connection to ``process``."""
        connection = self.connection_factory(process)
        self.connection = connection
        self._connection_pid = process.pid
        self._ready = ready
        return connection

    async def detach(self, reason: str, *, pid: int | None = None) -> None:
        """Detach the child connection, failing its pending requests.

        Args:
            reason: Logged and put in the ``Disconnected`` errors
            pid: Only detach if the connection belongs to this process
        """
        if pid is not None and pid != self._connection_pid:
            return
        connection = self.connection
        self.connection = None
        self._connection_pid = None
        self._ready = False
        if connection is not None:
            await connection.detach(reason)

    async def handle_restart_call(self, arguments: Any) -> RestartOutcome:
        """Run a restart requested through the restart tool.

        A second call while a restart is running is rejected at once.
        """
        if self._in_progress:
            logger.warning("Restart requested while another restart is in progress")
            error = RestartInProgress("A restart operation is already in progress")
            return self._failure(error)

        self._in_progress = True
        try:
            return await self._restart(arguments)
        finally:
            self._in_progress = False

    async def _restart(self, arguments: Any) -> RestartOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            args = RestartServerArguments.model_validate(arguments or {})
        except ValidationError as e:
            return self._failure(InvalidRestartConfig(f"Invalid restart arguments: {e}"))

        logger.info(f"Restarting child server (force={args.force})")
        await self.detach("child server restarting")

        config_applied = args.config is not None and not args.config.is_empty()
        if config_applied:
            self.supervisor.apply_update(args.config)

        try:
            process = await self.supervisor.restart(reset_attempts=True)
            await self.reconnect(process)
        except ProxyError as e:
            logger.error(f"Restart failed: {e}")
            return self._failure(e, started=started)

        self.restart_count += 1
        elapsed_ms = int((loop.time() - started) * 1000)
        message = "Server restarted successfully"
        if config_applied:
            message += " with configuration updates"
        logger.info(f"{message} in {elapsed_ms}ms")
        return RestartOutcome(
            success=True,
            message=message,
            restart_time_ms=elapsed_ms,
            restart_count=self.restart_count,
            server_info=self.child_info,
            config_applied=config_applied,
        )

    async def reconnect(self, process: asyncio.subprocess.Process) -> None:
        """Attach to a freshly started child and replay the handshake.

        If the client has not initialized yet there is nothing to replay and
        the client's own ``initialize`` will reach the child.

        Raises:
            RestartFailed: If the new child does not complete the handshake
        """
        connection = self.attach(process, ready=False)
        if self.client_init_params is None:
            self._ready = True
            return

        try:
            result = await connection.send_request(
                "initialize", self.client_init_params, timeout=self.handshake_timeout
            )
            await connection.send_notification("notifications/initialized")
        except ProxyError as e:
            raise RestartFailed(f"Handshake with restarted child failed: {e}") from e

        self.child_info = self.augmenter.extract_child_info(result)
        self._ready = True
        logger.info(
            f"Reconnected to {self.child_info.name} v{self.child_info.version} "
            f"(PID: {process.pid})"
        )

    async def recover_after_crash(self, process: asyncio.subprocess.Process) -> bool:
        """Reconnect after the supervisor restarted a crashed child.

        Returns:
            True if the child is ready again, False if a manual restart is
            already handling it

        Raises:
            RestartFailed: If the restarted child does not complete the handshake
        """
        if self._in_progress:
            return False
        self._in_progress = True
        try:
            await self.detach("child server crashed")
            await self.reconnect(process)
            self.restart_count += 1
            return True
        finally:
            self._in_progress = False

    async def notify_capabilities_changed(self) -> None:
        """Tell the client to re-list what the new child offers."""
        methods = ["notifications/tools/list_changed"]
        if self.child_info is not None:
            if self.child_info.has_capability("resources"):
                methods.append("notifications/resources/list_changed")
            if self.child_info.has_capability("prompts"):
                methods.append("notifications/prompts/list_changed")

        for method in methods:
            try:
                await self.client.send_notification(method)
            except ProxyError as e:
                logger.warning(f"Could not send {method}: {e}")
                return

    async def notify_degraded(self, detail: str) -> None:
        """Tell the client the child is gone until a manual restart."""
        try:
            await self.client.send_notification(
                "notifications/message",
                {
                    "level": "error",
                    "logger": "mcp-reload-proxy",
                    "data": f"{detail}. Call '{self.augmenter.tool_name}' to try again.",
                },
            )
            await self.client.send_notification("notifications/tools/list_changed")
        except ProxyError as e:
            logger.warning(f"Could not notify client about degraded child: {e}")

    def _failure(self, error: ProxyError, *, started: float | None = None) -> RestartOutcome:
        elapsed_ms = 0
        if started is not None:
            elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        code = error.code if isinstance(error.code, int) else ErrorCode.RESTART_FAILED
        return RestartOutcome(
            success=False,
            message=error.message,
            restart_time_ms=elapsed_ms,
            restart_count=self.restart_count,
            error_code=code,
        )
