"""
PipeGuard Native Transport Layer

This module provides the duplex byte stream the channel protocol runs on:
named pipes on Windows and Unix sockets standing in for them on Unix-like
systems. Both are driven through asyncio streams.
"""

import asyncio
import os
import platform
from abc import ABC, abstractmethod
from typing import Optional

from pipeguard.utils.errors import TransportError, handle_exception
from pipeguard.utils.logging import get_logger
from pipeguard.utils.platform import (
    format_pipe_name,
    get_named_pipe_peer_pid,
    get_socket_path,
    get_socket_peer_pid,
)

logger = get_logger(__name__)


class BaseTransport(ABC):
    """
    Abstract duplex byte stream.

    Ordered, reliable delivery with explicit flush, plus a way to find out
    which process sits on the other end.
    """

    def __init__(self, pipe_name: str, is_server: bool = False):
        self.pipe_name = pipe_name
        self.is_server = is_server

    @abstractmethod
    async def read_exactly(self, n: int) -> bytes:
        """Read exactly n bytes or fail with TransportError."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue bytes for sending."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Wait until queued bytes are handed to the OS."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        pass

    @abstractmethod
    async def wait_closed(self) -> None:
        pass

    @abstractmethod
    def is_closing(self) -> bool:
        pass

    @abstractmethod
    def peer_pid(self) -> int:
        """PID of the process attached to the other end."""
        pass

    async def write_all(self, data: bytes) -> None:
        self.write(data)
        await self.flush()


class StreamTransport(BaseTransport):
    """Transport over an asyncio StreamReader/StreamWriter pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        pipe_name: str,
        is_server: bool = False,
    ):
        super().__init__(pipe_name, is_server)
        self.reader = reader
        self.writer = writer

    async def read_exactly(self, n: int) -> bytes:
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                "Connection closed by peer",
                details={'expected': n, 'received': len(e.partial)}
            ) from e
        except OSError as e:
            raise TransportError(f"Receive failed: {str(e)}") from e

    def write(self, data: bytes) -> None:
        if self.writer.is_closing():
            raise TransportError("Transport is closed")
        self.writer.write(data)

    async def flush(self) -> None:
        try:
            await self.writer.drain()
        except OSError as e:
            raise TransportError(f"Send failed: {str(e)}") from e

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self) -> None:
        self.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            # Peer already gone; the stream is closed either way
            logger.debug(f"Error while closing transport: {e}")

    def is_closing(self) -> bool:
        return self.writer.is_closing()

    @handle_exception
    def peer_pid(self) -> int:
        pipe = self.writer.get_extra_info('pipe')
        if pipe is not None:
            return get_named_pipe_peer_pid(pipe.fileno(), self.is_server)

        sock = self.writer.get_extra_info('socket')
        if sock is None:
            raise TransportError("Transport has no OS handle")
        return get_socket_peer_pid(sock)


class PipeListener:
    """
    Server end of a pipe name.

    Incoming connections are queued by the event loop and handed out one
    at a time by accept().
    """

    def __init__(self, pipe_name: str):
        self.pipe_name = format_pipe_name(pipe_name)
        self.socket_path: Optional[str] = None
        self._queue: "asyncio.Queue[Optional[StreamTransport]]" = asyncio.Queue()
        self._server: Optional[asyncio.AbstractServer] = None
        self._pipe_servers: list = []
        self._lock_fd: Optional[int] = None
        self._closed = False

    @property
    def is_listening(self) -> bool:
        return (self._server is not None or bool(self._pipe_servers)) and not self._closed

    def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        transport = StreamTransport(reader, writer, self.pipe_name, is_server=True)
        if self._closed:
            transport.close()
            return
        self._queue.put_nowait(transport)

    @handle_exception
    async def start_unix(self) -> None:
        self.socket_path = get_socket_path(self.pipe_name)
        self._acquire_lock(self.socket_path)

        try:
            # Holding the lock means no live listener owns this socket
            try:
                os.unlink(self.socket_path)
                logger.debug(f"Removed stale socket file: {self.socket_path}")
            except FileNotFoundError:
                pass

            self._server = await asyncio.start_unix_server(self._on_client, path=self.socket_path)

            # Set secure permissions
            os.chmod(self.socket_path, 0o600)
        except BaseException:
            self._release_lock()
            raise
        logger.info(f"Listening on {self.pipe_name} ({self.socket_path})")

    def _acquire_lock(self, socket_path: str) -> None:
        import fcntl

        fd = os.open(f"{socket_path}.lock", os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise TransportError(
                f"Pipe already in use: {self.pipe_name}",
                details={'socket_path': socket_path}
            )
        self._lock_fd = fd

    def _release_lock(self) -> None:
        if self._lock_fd is not None:
            os.close(self._lock_fd)
            self._lock_fd = None

    @handle_exception
    async def start_named_pipe(self) -> None:
        loop = asyncio.get_running_loop()
        if not hasattr(loop, 'start_serving_pipe'):
            raise TransportError("Named pipes require the proactor event loop")

        def protocol_factory():
            reader = asyncio.StreamReader()
            return asyncio.StreamReaderProtocol(reader, self._on_client)

        self._pipe_servers = await loop.start_serving_pipe(protocol_factory, self.pipe_name)
        logger.info(f"Listening on {self.pipe_name}")

    async def accept(self) -> StreamTransport:
        """Wait for the next client and return its transport."""
        if self._closed and self._queue.empty():
            raise TransportError("Listener closed")

        transport = await self._queue.get()
        if transport is None:
            # Wake any other waiter too
            self._queue.put_nowait(None)
            raise TransportError("Listener closed")
        return transport

    async def close(self) -> None:
        """Stop accepting. Connections not yet accepted are closed."""
        if self._closed:
            return
        self._closed = True

        if self._server is not None:
            # Accepted connections stay open; they belong to their handlers
            self._server.close()
            self._server = None

        for pipe_server in self._pipe_servers:
            pipe_server.close()
        self._pipe_servers = []

        while not self._queue.empty():
            pending = self._queue.get_nowait()
            if pending is not None:
                pending.close()
        self._queue.put_nowait(None)

        if self.socket_path and os.path.exists(self.socket_path):
            try:
                os.unlink(self.socket_path)
                logger.debug(f"Cleaned up socket file: {self.socket_path}")
            except OSError as e:
                logger.warning(f"Failed to cleanup socket file: {e}")
        self._release_lock()

        logger.info(f"Stopped listening on {self.pipe_name}")


class NativeTransport:
    """Factory for platform-specific transport."""

    @staticmethod
    async def listen(pipe_name: str) -> PipeListener:
        """Bind a pipe name and return the listener."""
        system = platform.system()
        listener = PipeListener(pipe_name)

        if system in ('Linux', 'Darwin'):  # Unix-like systems
            await listener.start_unix()
        elif system == 'Windows':
            await listener.start_named_pipe()
        else:
            raise TransportError(f"Unsupported platform for IPC: {system}")

        return listener

    @staticmethod
    @handle_exception
    async def connect(pipe_name: str) -> StreamTransport:
        """Open the client end of a pipe name."""
        system = platform.system()
        pipe_name = format_pipe_name(pipe_name)

        if system in ('Linux', 'Darwin'):
            socket_path = get_socket_path(pipe_name)
            if not os.path.exists(socket_path):
                raise TransportError(
                    f"Pipe does not exist: {pipe_name}",
                    details={'socket_path': socket_path}
                )
            try:
                reader, writer = await asyncio.open_unix_connection(socket_path)
            except OSError as e:
                raise TransportError(f"Failed to connect to {pipe_name}: {str(e)}") from e

        elif system == 'Windows':
            loop = asyncio.get_running_loop()
            if not hasattr(loop, 'create_pipe_connection'):
                raise TransportError("Named pipes require the proactor event loop")

            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            try:
                transport, _ = await loop.create_pipe_connection(lambda: protocol, pipe_name)
            except OSError as e:
                raise TransportError(f"Failed to connect to {pipe_name}: {str(e)}") from e
            writer = asyncio.StreamWriter(transport, protocol, reader, loop)

        else:
            raise TransportError(f"Unsupported platform for IPC: {system}")

        logger.debug(f"Connected to {pipe_name}")
        return StreamTransport(reader, writer, pipe_name, is_server=False)
