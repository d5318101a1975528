"""Shared fixtures for proxy tests."""

import asyncio
import json
import sys
from pathlib import Path

import pytest

from mcp_reload_proxy.models import ProxyConfig

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


class MemoryWriter:
    """Stream writer stand-in collecting written JSON lines."""

    def __init__(self):
        self.buffer = b""
        self.messages: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.buffer += data
        while b"\n" in self.buffer:
            line, self.buffer = self.buffer.split(b"\n", 1)
            self.messages.put_nowait(json.loads(line))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    async def next_message(self, timeout: float = 5.0) -> dict:
        return await asyncio.wait_for(self.messages.get(), timeout)

    async def wait_for(self, predicate, timeout: float = 5.0) -> dict:
        """Return the first message matching ``predicate``, skipping others."""

        async def _scan():
            while True:
                message = await self.messages.get()
                if predicate(message):
                    return message

        return await asyncio.wait_for(_scan(), timeout)


def send_line(reader: asyncio.StreamReader, message: dict) -> None:
    reader.feed_data((json.dumps(message) + "\n").encode())


def fake_server_config(**overrides) -> ProxyConfig:
    values = {
        "command": sys.executable,
        "args": [str(FAKE_SERVER)],
        "restart_delay": 0.05,
        "operation_timeout": 5.0,
        "graceful_timeout": 2.0,
    }
    values.update(overrides)
    return ProxyConfig(**values)


@pytest.fixture
def fake_config():
    """Config running the fake MCP server."""
    return fake_server_config()


@pytest.fixture
async def client_streams():
    """Reader/writer pair standing in for the client side of the proxy."""
    return asyncio.StreamReader(), MemoryWriter()
