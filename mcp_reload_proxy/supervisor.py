"""Supervision of the child MCP server process.

The supervisor spawns the child with piped stdio, watches it for unexpected
exits and restarts it according to the configured policy. Lifecycle changes
are published on an ``asyncio.Queue`` so the proxy can react to them in a
single task.
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from .config import child_environment
from .errors import RestartLimitExceeded, SpawnError
from .models import ConfigUpdate, ProcessState, ProxyConfig
from .transport import STDIO_STREAM_LIMIT

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("mcp_reload_proxy.child")

MAX_RESTART_DELAY = 30.0


class LifecycleEventKind(str, Enum):
    """Events published by the supervisor."""

    STATE_CHANGED = "state_changed"
    CRASHED = "crashed"
    RESTARTED = "restarted"
    RESTART_FAILED = "restart_failed"
    EXHAUSTED = "exhausted"


@dataclass
class LifecycleEvent:
    """A change in the child's lifecycle."""

    kind: LifecycleEventKind
    state: ProcessState
    pid: int | None = None
    automatic: bool = False
    detail: str | None = None


@dataclass
class ChildProcess:
    """One incarnation of the child process."""

    command: str
    args: list[str]
    cwd: str | None
    env: dict[str, str] = field(repr=False)
    process: asyncio.subprocess.Process | None = None
    started_at: float | None = None
    exit_reason: str | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None


class ChildProcessSupervisor:
    """Owns the child process and its restart policy.

    Only the supervisor touches the process handle. Callers get the stdio
    streams from the process returned by ``start``/``restart``.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.events: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        self.history: deque[ProcessState] = deque([ProcessState.STOPPED], maxlen=64)
        self.last_exit_reason: str | None = None

        self._state = ProcessState.STOPPED
        self._child: ChildProcess | None = None
        self._restart_attempts = 0
        self._lock = asyncio.Lock()
        self._watch_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._child.process if self._child is not None else None

    @property
    def pid(self) -> int | None:
        return self._child.pid if self._child is not None else None

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    def is_running(self) -> bool:
        process = self.process
        return (
            self._state is ProcessState.RUNNING
            and process is not None
            and process.returncode is None
        )

    def restart_delay_for(self, attempt: int) -> float:
        """Exponential backoff delay before the given restart attempt."""
        if attempt <= 0 or self.config.restart_delay <= 0:
            return 0.0
        return min(self.config.restart_delay * 2 ** (attempt - 1), MAX_RESTART_DELAY)

    def apply_update(self, update: ConfigUpdate) -> None:
        """Apply configuration changes for the next start."""
        changes: dict = {}
        if update.environment:
            changes["environment"] = {**self.config.environment, **update.environment}
        if update.args is not None:
            changes["args"] = list(update.args)
        if update.working_directory is not None:
            changes["working_directory"] = update.working_directory
        if changes:
            logger.info(f"Applying child configuration update: {sorted(changes)}")
            self.config = self.config.model_copy(update=changes)

    async def start(self) -> asyncio.subprocess.Process:
        """Spawn the child.

        Returns:
            The running process

        Raises:
            SpawnError: If the executable is missing or fails to launch
            RuntimeError: If the child is already running
        """
        async with self._lock:
            return await self._start_locked()

    async def stop(self, graceful_timeout: float | None = None) -> None:
        """Stop the child: SIGTERM, then SIGKILL after the grace period.

        Args:
            graceful_timeout: Grace period in seconds (defaults to config)
        """
        async with self._lock:
            await self._stop_locked(graceful_timeout)

    async def shutdown(self) -> None:
        """Cancel any scheduled automatic restart and stop the child."""
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.stop()

    async def restart(self, *, reset_attempts: bool = False) -> asyncio.subprocess.Process:
        """Stop the child if needed and start a new one.

        Args:
            reset_attempts: Clear the consecutive attempt counter first
                (used for manual restarts)

        Returns:
            The new process

        Raises:
            RestartLimitExceeded: If the attempt limit is reached; the state
                is left ``stopped``
            SpawnError: If the new child cannot be launched
        """
        async with self._lock:
            return await self._restart_locked(reset_attempts=reset_attempts, automatic=False)

    async def _start_locked(self) -> asyncio.subprocess.Process:
        if self._state not in (
            ProcessState.STOPPED,
            ProcessState.CRASHED,
            ProcessState.RESTARTING,
        ):
            raise RuntimeError(f"Cannot start child while {self._state.value}")

        child = self._build_child()
        self._set_state(ProcessState.STARTING)

        if not _is_executable(child.command, child.cwd):
            self._set_state(ProcessState.STOPPED)
            raise SpawnError(
                f"Command '{child.command}' not found in PATH or not executable"
            )

        logger.info(f"Spawning child: {build_server_command(child.command, child.args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                child.command,
                *child.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=child.cwd,
                env=child.env,
                limit=STDIO_STREAM_LIMIT,
            )
        except OSError as e:
            self._set_state(ProcessState.STOPPED)
            raise SpawnError(f"Failed to spawn '{child.command}': {e}") from e

        child.process = process
        child.started_at = asyncio.get_running_loop().time()
        self._child = child
        self._set_state(ProcessState.RUNNING)

        self._watch_task = asyncio.create_task(
            self._watch_exit(child), name=f"child-{process.pid}-watch"
        )
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(process), name=f"child-{process.pid}-stderr"
        )
        logger.info(f"Child started (PID: {process.pid})")
        return process

    async def _stop_locked(self, graceful_timeout: float | None) -> None:
        child = self._child
        if child is None or child.process is None:
            if self._state is not ProcessState.STOPPED:
                self._set_state(ProcessState.STOPPED)
            return

        timeout = self.config.graceful_timeout if graceful_timeout is None else graceful_timeout
        process = child.process
        self._set_state(ProcessState.STOPPING)

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
                logger.info(f"Child {process.pid} terminated gracefully")
            except asyncio.TimeoutError:
                logger.warning(
                    f"Child {process.pid} did not terminate within {timeout:g}s, force killing"
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        child.exit_reason = describe_exit(process.returncode)
        self.last_exit_reason = child.exit_reason
        self._child = None
        await self._finish_child_tasks()
        self._set_state(ProcessState.STOPPED)

    async def _restart_locked(
        self, *, reset_attempts: bool, automatic: bool
    ) -> asyncio.subprocess.Process:
        if reset_attempts:
            self._restart_attempts = 0

        if self._state is ProcessState.CRASHED:
            # Process already exited; go straight to starting
            self._child = None
        else:
            self._set_state(ProcessState.RESTARTING)
            await self._stop_locked(None)

        if self._restart_attempts >= self.config.restart_limit:
            self._set_state(ProcessState.STOPPED)
            detail = f"Maximum restart attempts ({self.config.restart_limit}) exceeded"
            logger.error(detail)
            self._publish(LifecycleEventKind.EXHAUSTED, automatic=automatic, detail=detail)
            raise RestartLimitExceeded(detail)

        self._restart_attempts += 1
        logger.info(
            f"Restarting child (attempt {self._restart_attempts}/{self.config.restart_limit})"
        )
        process = await self._start_locked()
        self._publish(LifecycleEventKind.RESTARTED, automatic=automatic)
        return process

    async def _watch_exit(self, child: ChildProcess) -> None:
        returncode = await child.process.wait()
        if child is not self._child or self._state is not ProcessState.RUNNING:
            return

        reason = describe_exit(returncode)
        child.exit_reason = reason
        self.last_exit_reason = reason

        loop = asyncio.get_running_loop()
        window = self.config.restart_reset_window
        if window > 0 and loop.time() - child.started_at >= window:
            self._restart_attempts = 0

        logger.warning(f"Child {child.pid} exited unexpectedly ({reason})")
        self._set_state(ProcessState.CRASHED)
        self._publish(LifecycleEventKind.CRASHED, pid=child.pid, detail=reason)

        if not self.config.auto_restart:
            self._give_up(f"Child crashed ({reason}) and auto-restart is disabled")
        elif self._restart_attempts >= self.config.restart_limit:
            self._give_up(
                f"Child crashed ({reason}) after {self._restart_attempts} restart "
                f"attempt(s); limit is {self.config.restart_limit}"
            )
        else:
            self._restart_task = asyncio.create_task(
                self._auto_restart(), name="child-auto-restart"
            )

    async def _auto_restart(self) -> None:
        while True:
            delay = self.restart_delay_for(self._restart_attempts + 1)
            if delay:
                logger.info(f"Restarting child in {delay:g}s")
                await asyncio.sleep(delay)

            async with self._lock:
                if self._state is not ProcessState.CRASHED:
                    return
                try:
                    await self._restart_locked(reset_attempts=False, automatic=True)
                    return
                except RestartLimitExceeded:
                    return
                except SpawnError as e:
                    logger.error(f"Automatic restart failed: {e}")
                    self._publish(
                        LifecycleEventKind.RESTART_FAILED, automatic=True, detail=str(e)
                    )
                    if self._restart_attempts >= self.config.restart_limit:
                        self._give_up(f"Automatic restart failed: {e}")
                        return
                    self._set_state(ProcessState.CRASHED)

    def _give_up(self, detail: str) -> None:
        logger.error(detail)
        self._child = None
        self._set_state(ProcessState.STOPPED)
        self._publish(LifecycleEventKind.EXHAUSTED, detail=detail)

    async def _finish_child_tasks(self) -> None:
        tasks = [
            t
            for t in (self._watch_task, self._stderr_task)
            if t is not None and t is not asyncio.current_task()
        ]
        self._watch_task = None
        self._stderr_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            except (ConnectionError, OSError):
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                child_logger.info(f"[pid {process.pid}] {text}")

    def _build_child(self) -> ChildProcess:
        command, extra_args = parse_server_command(self.config.command)
        return ChildProcess(
            command=command,
            args=extra_args + list(self.config.args),
            cwd=self.config.working_directory,
            env=child_environment(self.config.environment),
        )

    def _set_state(self, state: ProcessState) -> None:
        if state is self._state:
            return
        logger.debug(f"Child state {self._state.value} -> {state.value}")
        self._state = state
        self.history.append(state)
        self._publish(LifecycleEventKind.STATE_CHANGED)

    def _publish(
        self,
        kind: LifecycleEventKind,
        *,
        pid: int | None = None,
        automatic: bool = False,
        detail: str | None = None,
    ) -> None:
        self.events.put_nowait(
            LifecycleEvent(
                kind=kind,
                state=self._state,
                pid=pid if pid is not None else self.pid,
                automatic=automatic,
                detail=detail,
            )
        )


def _is_executable(command: str, cwd: str | None = None) -> bool:
    # Relative paths are resolved by the child against its own working directory
    if cwd and os.sep in command and not os.path.isabs(command):
        command = os.path.join(cwd, command)
    return shutil.which(command) is not None


def describe_exit(returncode: int | None) -> str:
    """Human readable exit reason for a process return code."""
    if returncode is None:
        return "still running"
    if returncode < 0:
        try:
            return f"signal {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal {-returncode}"
    return f"exit code {returncode}"


async def validate_command_available(command: str) -> tuple[bool, str]:
    """Validate that a command is available in PATH.

    Args:
        command: Command to check (e.g., "npx", "python")

    Returns:
        Tuple of (is_available, message)
    """
    if _is_executable(command):
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=5.0)
            version = (stdout or stderr).decode(errors="replace").strip().split("\n")[0]
            return (True, f"{command} is available: {version}")
        except (OSError, asyncio.TimeoutError):
            return (True, f"{command} is available in PATH")

    suggestions = []
    if command in ("npx", "node"):
        suggestions.append("Install Node.js: https://nodejs.org/")
    elif command == "python":
        suggestions.append("Try: python3 instead")
    elif command in ("uv", "uvx"):
        suggestions.append("Install uv: https://docs.astral.sh/uv/")

    message = f"{command} not found in PATH."
    if suggestions:
        message += "\nInstallation suggestions:\n" + "\n".join(
            f"  - {s}" for s in suggestions
        )
    return (False, message)


def parse_server_command(command_str: str) -> tuple[str, list[str]]:
    """Split a command string into command and arguments.

    Examples:
        >>> parse_server_command("node build/index.js --stdio")
        ('node', ['build/index.js', '--stdio'])

    Raises:
        ValueError: If the command string is empty
    """
    parts = shlex.split(command_str)
    if not parts:
        raise ValueError("Command string is empty")
    return (parts[0], parts[1:])


def build_server_command(command: str, args: list[str]) -> str:
    """Build a printable command string from command and arguments."""
    if not command:
        raise ValueError("Command is required")
    return shlex.join([command] + list(args or []))
