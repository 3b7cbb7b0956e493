"""
PipeGuard test configuration and fixtures

This module provides shared test fixtures, an in-memory transport pair
and a scripted identity resolver for the entire test suite.
"""

import asyncio
import os
import platform
import uuid
from typing import Dict, Optional

import pytest

from pipeguard.ipc.transport import BaseTransport
from pipeguard.security.identity import IdentityResolver, ProcessIdentityResolver
from pipeguard.utils.errors import IdentityError, TransportError
from pipeguard.utils.logging import get_logger


class LoopbackTransport(BaseTransport):
    """
    In-memory transport. Bytes written on one end of a pair become
    readable on the other; everything written is also kept in ``sent``
    so tests can look at the wire.
    """

    def __init__(self, pipe_name: str = "\\\\.\\pipe\\loopback", pid: Optional[int] = None):
        super().__init__(pipe_name)
        self.reader = asyncio.StreamReader()
        self.peer: Optional["LoopbackTransport"] = None
        self.sent = bytearray()
        self.flush_count = 0
        self.closed = False
        self._pid = os.getpid() if pid is None else pid

    @classmethod
    def pair(cls, **kwargs):
        a, b = cls(**kwargs), cls(**kwargs)
        a.peer, b.peer = b, a
        return a, b

    async def read_exactly(self, n: int) -> bytes:
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransportError("Connection closed by peer") from e

    def write(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("Transport is closed")
        self.sent += data
        self.peer.reader.feed_data(data)

    async def flush(self) -> None:
        self.flush_count += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.peer.reader.feed_eof()

    async def wait_closed(self) -> None:
        self.close()

    def is_closing(self) -> bool:
        return self.closed

    def peer_pid(self) -> int:
        return self._pid


class StaticResolver(IdentityResolver):
    """Resolver answering from a fixed pid -> path table."""

    def __init__(self, paths: Dict[int, str], own_path: str):
        self.paths = paths
        self.own_path = own_path

    def process_path(self, pid: int) -> str:
        if pid not in self.paths:
            raise IdentityError("Cannot open process", details={'pid': pid})
        return self.paths[pid]

    def self_path(self) -> str:
        return self.own_path


class RelocatedResolver(ProcessIdentityResolver):
    """Real resolver that believes this process lives somewhere else."""

    def __init__(self, own_path: str = "/nonexistent/elsewhere/python"):
        self.own_path = own_path

    def self_path(self) -> str:
        return self.own_path


@pytest.fixture
def pipe_name() -> str:
    """Unique logical pipe name per test."""
    return f"pipeguard_test_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def logger():
    """Get a test logger instance."""
    return get_logger("test", level="DEBUG")


@pytest.fixture
def relocated_resolver() -> RelocatedResolver:
    return RelocatedResolver()


class TestHelper:
    """Helper class for common test operations."""

    @staticmethod
    async def wait_for_condition(
        condition_func,
        timeout: float = 5.0,
        interval: float = 0.01
    ) -> bool:
        """Wait for a condition to become true."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            if condition_func():
                return True
            await asyncio.sleep(interval)

        return condition_func()

    @staticmethod
    async def start_serving(server, handler) -> asyncio.Task:
        """Bind ``server`` and run its accept loop in a background task."""
        await server.listen()
        return asyncio.create_task(server.serve(handler))

    @staticmethod
    async def shutdown(server, serve_task: asyncio.Task) -> None:
        await server.stop()
        await asyncio.wait_for(serve_task, timeout=5.0)
        await asyncio.wait_for(server.wait_for_handlers(), timeout=5.0)


@pytest.fixture
def test_helper():
    """Get test helper instance."""
    return TestHelper()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "platform: mark test as needing real OS pipes")


def pytest_collection_modifyitems(config, items):
    """Add markers automatically."""
    for item in items:
        if "integration" in item.name or "enforcement" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


def pytest_runtest_setup(item):
    """Skip tests needing Unix sockets on platforms without them."""
    if item.get_closest_marker("platform"):
        if platform.system() not in ('Linux', 'Darwin'):
            pytest.skip("Unix socket transport not available on this platform")
