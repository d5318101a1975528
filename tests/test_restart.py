"""Tests for the restart orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_reload_proxy.augmenter import CapabilityAugmenter
from mcp_reload_proxy.errors import (
    Disconnected,
    ErrorCode,
    RestartFailed,
    RestartLimitExceeded,
    SpawnError,
)
from mcp_reload_proxy.models import ChildServerInfo, ProcessState
from mcp_reload_proxy.restart import DEFAULT_INITIALIZE_PARAMS, RestartOrchestrator

CLIENT_PARAMS = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"roots": {}},
    "clientInfo": {"name": "test-client", "version": "1.0"},
}

CHILD_INIT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"tools": {}, "prompts": {}},
    "serverInfo": {"name": "weather", "version": "2.0.0"},
}


def make_process(pid: int) -> MagicMock:
    process = MagicMock()
    process.pid = pid
    return process


def make_connection() -> MagicMock:
    conn = MagicMock()
    conn.connected = True
    conn.send_request = AsyncMock(return_value=CHILD_INIT)
    conn.send_notification = AsyncMock()
    conn.detach = AsyncMock()
    return conn


@pytest.fixture
def supervisor():
    sup = MagicMock()
    sup.state = ProcessState.RUNNING
    sup.restart = AsyncMock(return_value=make_process(200))
    return sup


@pytest.fixture
def client():
    conn = MagicMock()
    conn.send_notification = AsyncMock()
    return conn


@pytest.fixture
def connections():
    """Connections handed out by the factory, in creation order."""
    return []


@pytest.fixture
def orchestrator(supervisor, client, connections):
    def factory(process):
        conn = make_connection()
        connections.append(conn)
        return conn

    orch = RestartOrchestrator(
        supervisor, CapabilityAugmenter(), client, factory, handshake_timeout=1.0
    )
    orch.attach(make_process(100))
    return orch


class TestHandleRestartCall:
    """Test restart requests from the restart tool."""

    @pytest.mark.asyncio
    async def test_successful_restart(self, orchestrator, supervisor, connections):
        """Test a restart detaches, restarts, replays the handshake and reports."""
        orchestrator.client_init_params = CLIENT_PARAMS
        old = connections[0]

        outcome = await orchestrator.handle_restart_call({})

        assert outcome.success is True
        assert outcome.restart_count == 1
        assert outcome.server_info.name == "weather"
        old.detach.assert_awaited_once()
        supervisor.restart.assert_awaited_once_with(reset_attempts=True)

        new = connections[1]
        new.send_request.assert_awaited_once_with("initialize", CLIENT_PARAMS, timeout=1.0)
        new.send_notification.assert_awaited_once_with("notifications/initialized")
        assert orchestrator.ready_connection() is new
        assert orchestrator.in_progress is False

    @pytest.mark.asyncio
    async def test_restart_before_client_initialized(self, orchestrator, connections):
        """Test no handshake is replayed when the client never initialized."""
        outcome = await orchestrator.handle_restart_call(None)

        assert outcome.success is True
        connections[1].send_request.assert_not_awaited()
        assert orchestrator.ready_connection() is connections[1]

    @pytest.mark.asyncio
    async def test_concurrent_restart_rejected(self, orchestrator, supervisor):
        """Test a second restart during the first is rejected immediately."""
        release = asyncio.Event()

        async def slow_restart(**kwargs):
            await release.wait()
            return make_process(300)

        supervisor.restart = AsyncMock(side_effect=slow_restart)

        first = asyncio.create_task(orchestrator.handle_restart_call({}))
        await asyncio.sleep(0)
        assert orchestrator.in_progress is True
        assert orchestrator.ready_connection() is None

        second = await asyncio.wait_for(orchestrator.handle_restart_call({}), 0.5)
        assert second.success is False
        assert second.error_code == ErrorCode.RESTART_IN_PROGRESS
        assert "already in progress" in second.message

        release.set()
        assert (await first).success is True
        supervisor.restart.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_restart_limit(self, orchestrator, supervisor):
        """Test RestartLimitExceeded becomes a failure outcome."""
        supervisor.restart = AsyncMock(
            side_effect=RestartLimitExceeded("Maximum restart attempts (0) exceeded")
        )
        outcome = await orchestrator.handle_restart_call({})

        assert outcome.success is False
        assert outcome.error_code == ErrorCode.RESTART_LIMIT_EXCEEDED
        assert outcome.to_tool_result()["isError"] is True
        assert orchestrator.in_progress is False
        assert orchestrator.ready_connection() is None

    @pytest.mark.asyncio
    async def test_spawn_failure(self, orchestrator, supervisor):
        """Test a spawn failure becomes a failure outcome."""
        supervisor.restart = AsyncMock(side_effect=SpawnError("Command 'x' not found"))
        outcome = await orchestrator.handle_restart_call({})
        assert outcome.success is False
        assert outcome.error_code == ErrorCode.SPAWN_FAILED

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, orchestrator, supervisor):
        """Test invalid arguments are rejected before anything restarts."""
        outcome = await orchestrator.handle_restart_call({"config": {"bogus": 1}})

        assert outcome.success is False
        assert outcome.error_code == ErrorCode.INVALID_RESTART_CONFIG
        supervisor.restart.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_config_update_applied(self, orchestrator, supervisor):
        """Test a config update is passed to the supervisor before restarting."""
        outcome = await orchestrator.handle_restart_call(
            {"config": {"environment": {"DEBUG": "1"}}}
        )

        assert outcome.success is True
        assert outcome.config_applied is True
        assert "with configuration updates" in outcome.message
        update = supervisor.apply_update.call_args.args[0]
        assert update.environment == {"DEBUG": "1"}

    @pytest.mark.asyncio
    async def test_handshake_failure(self, orchestrator, supervisor, connections):
        """Test a failed handshake with the new child reports RestartFailed."""
        orchestrator.client_init_params = CLIENT_PARAMS

        def factory(process):
            conn = make_connection()
            conn.send_request = AsyncMock(side_effect=Disconnected("child exited"))
            connections.append(conn)
            return conn

        orchestrator.connection_factory = factory
        outcome = await orchestrator.handle_restart_call({})

        assert outcome.success is False
        assert outcome.error_code == ErrorCode.RESTART_FAILED
        assert "Handshake" in outcome.message
        assert orchestrator.ready_connection() is None


class TestCrashRecovery:
    """Test reconnecting after an automatic restart."""

    @pytest.mark.asyncio
    async def test_recover_after_crash(self, orchestrator, connections):
        """Test recovery reattaches and replays the handshake."""
        orchestrator.client_init_params = CLIENT_PARAMS

        assert await orchestrator.recover_after_crash(make_process(201)) is True
        assert orchestrator.ready_connection() is connections[1]
        assert orchestrator.restart_count == 1

    @pytest.mark.asyncio
    async def test_recover_handshake_failure_raises(self, orchestrator, connections):
        """Test a restarted child that fails the handshake raises RestartFailed."""
        orchestrator.client_init_params = CLIENT_PARAMS

        def factory(process):
            conn = make_connection()
            conn.send_request = AsyncMock(side_effect=Disconnected("child exited"))
            connections.append(conn)
            return conn

        orchestrator.connection_factory = factory
        with pytest.raises(RestartFailed, match="Handshake"):
            await orchestrator.recover_after_crash(make_process(201))

        assert orchestrator.in_progress is False
        assert orchestrator.ready_connection() is None
        assert orchestrator.restart_count == 0

    @pytest.mark.asyncio
    async def test_recover_skipped_during_manual_restart(self, orchestrator):
        """Test crash recovery yields to a running manual restart."""
        orchestrator._in_progress = True
        assert await orchestrator.recover_after_crash(make_process(201)) is False

    @pytest.mark.asyncio
    async def test_detach_checks_pid(self, orchestrator, connections):
        """Test a stale crash for another pid leaves the connection alone."""
        await orchestrator.detach("stale", pid=999)
        connections[0].detach.assert_not_awaited()
        assert orchestrator.ready_connection() is connections[0]

        await orchestrator.detach("crash", pid=100)
        connections[0].detach.assert_awaited_once_with("crash")
        assert orchestrator.ready_connection() is None

    @pytest.mark.asyncio
    async def test_not_ready_unless_running(self, orchestrator, supervisor):
        """Test the connection is withheld while the child is not running."""
        supervisor.state = ProcessState.CRASHED
        assert orchestrator.ready_connection() is None


class TestNotifications:
    """Test client notifications."""

    @pytest.mark.asyncio
    async def test_list_changed_follows_capabilities(self, orchestrator, client):
        """Test list_changed is sent for tools and each advertised family."""
        orchestrator.child_info = ChildServerInfo(capabilities={"tools": {}, "prompts": {}})
        await orchestrator.notify_capabilities_changed()

        methods = [c.args[0] for c in client.send_notification.await_args_list]
        assert methods == [
            "notifications/tools/list_changed",
            "notifications/prompts/list_changed",
        ]

    @pytest.mark.asyncio
    async def test_notify_survives_closed_client(self, orchestrator, client):
        """Test a closed client does not make notification raise."""
        client.send_notification = AsyncMock(side_effect=Disconnected("closed"))
        await orchestrator.notify_capabilities_changed()
        await orchestrator.notify_degraded("gone")

    @pytest.mark.asyncio
    async def test_notify_degraded(self, orchestrator, client):
        """Test the degraded notice is a log message plus tools/list_changed."""
        await orchestrator.notify_degraded("Maximum restart attempts (3) exceeded")

        first, second = client.send_notification.await_args_list
        assert first.args[0] == "notifications/message"
        assert first.args[1]["level"] == "error"
        assert "restart_server" in first.args[1]["data"]
        assert second.args[0] == "notifications/tools/list_changed"


def test_default_initialize_params():
    """Test the fallback handshake identifies the proxy."""
    assert DEFAULT_INITIALIZE_PARAMS["clientInfo"]["name"] == "mcp-reload-proxy"
    assert "protocolVersion" in DEFAULT_INITIALIZE_PARAMS
