"""
PipeGuard Server

This module provides the accept/dispatch loop. Each accepted client is
optionally verified, given a unique connection id, wrapped in a
Connection and handed to caller-supplied handling logic running in its
own task, so the server keeps accepting while handlers run.
"""

import asyncio
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

from pipeguard.ipc.channel import Channel
from pipeguard.ipc.crypto import MessageCipher
from pipeguard.ipc.transport import BaseTransport, NativeTransport, PipeListener
from pipeguard.security.identity import IdentityResolver, get_default_resolver, verify_peer
from pipeguard.utils.config import DEFAULT_MAX_FRAME_SIZE, PipeGuardConfig
from pipeguard.utils.errors import IdentityError, PipeGuardError, TransportError
from pipeguard.utils.logging import get_logger
from pipeguard.utils.platform import format_pipe_name

logger = get_logger(__name__)

MAX_CONNECTION_ID = 2 ** 64 - 1


class ServerState(Enum):
    """Listener state machine."""

    IDLE = "idle"
    LISTENING = "listening"
    VERIFYING = "verifying"
    DISPATCHED = "dispatched"
    STOPPED = "stopped"


class ConnectionIdCounter:
    """Strictly increasing connection ids, safe across threads."""

    def __init__(self, start: int = 1):
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._next
            if value > MAX_CONNECTION_ID:
                raise PipeGuardError("Connection id space exhausted")
            self._next += 1
            return value

    @property
    def issued(self) -> int:
        """Last id handed out, 0 before the first."""
        with self._lock:
            return self._next - 1


class Connection(Channel):
    """Server-side handle to one accepted client."""

    def __init__(
        self,
        connection_id: int,
        transport: BaseTransport,
        cipher: Optional[MessageCipher] = None,
        verified: bool = False,
        max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE,
    ):
        super().__init__(transport, cipher, max_frame_size)
        self._id = connection_id
        self.verified = verified

    @property
    def id(self) -> int:
        return self._id

    def __repr__(self) -> str:
        return f"Connection(id={self._id}, verified={self.verified}, open={self.is_open})"


ConnectionHandler = Callable[[Connection], Awaitable[Any]]


class PipeServer:
    """
    Named pipe server.

    Example:
        >>> server = PipeServer("my_pipe")
        >>> async def echo(connection):
        ...     message = await connection.receive_string()
        ...     await connection.send_string(message)
        >>> await server.start(echo)
    """

    def __init__(
        self,
        pipe_name: str,
        cipher: Optional[MessageCipher] = None,
        enforce_same_path_client: bool = False,
        identity: Optional[IdentityResolver] = None,
        max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE,
    ):
        """
        Initialize server.

        Args:
            pipe_name: Logical or fully qualified pipe name
            cipher: Message cipher shared by all connections, None for plaintext
            enforce_same_path_client: Only accept clients running this executable
            identity: Resolver used for path enforcement
            max_frame_size: Largest accepted incoming frame, None for no bound
        """
        self._pipe_name = format_pipe_name(pipe_name)
        self.cipher = cipher
        self._enforce_same_path_client = enforce_same_path_client
        self.identity = identity or get_default_resolver()
        self.max_frame_size = max_frame_size

        self.state = ServerState.IDLE
        self.listener: Optional[PipeListener] = None
        self._ids = ConnectionIdCounter()
        self._handler_tasks: Set[asyncio.Task] = set()

    @classmethod
    def encrypted(cls, pipe_name: str, key: Optional[bytes] = None, **kwargs) -> "PipeServer":
        """Server with encryption; uses the shared default key when ``key`` is None."""
        return cls(pipe_name, cipher=MessageCipher.from_key(key), **kwargs)

    @property
    def pipe_name(self) -> str:
        return self._pipe_name

    @property
    def enforces_same_path(self) -> bool:
        return self._enforce_same_path_client

    def enforce_same_path_client(self, enforce: bool) -> None:
        """Only accept clients with the same executable path as this process."""
        self._enforce_same_path_client = enforce

    @property
    def handler_tasks(self) -> Set[asyncio.Task]:
        """Handler tasks still running."""
        return set(self._handler_tasks)

    @property
    def connections_accepted(self) -> int:
        return self._ids.issued

    async def listen(self) -> None:
        """Bind the pipe name."""
        if self.state == ServerState.STOPPED:
            raise PipeGuardError("Server stopped", details={'pipe_name': self._pipe_name})
        if self.listener is not None:
            raise PipeGuardError("Server already listening", details={'pipe_name': self._pipe_name})

        self.listener = await NativeTransport.listen(self._pipe_name)
        self.state = ServerState.LISTENING
        logger.info(
            f"Server started: {self._pipe_name} "
            f"(encrypted={self.cipher is not None}, enforce_same_path={self._enforce_same_path_client})"
        )

    async def start(self, handler: ConnectionHandler) -> None:
        """Bind the pipe name and serve until stopped."""
        await self.listen()
        await self.serve(handler)

    async def serve(self, handler: ConnectionHandler) -> None:
        """
        Run the accept loop.

        Returns once the listener is closed by stop(). Cancelling the task
        running this coroutine also ends the loop. Handlers already
        dispatched keep running in both cases.
        """
        if self.listener is None:
            raise PipeGuardError("Server not listening", details={'pipe_name': self._pipe_name})

        try:
            while True:
                self.state = ServerState.LISTENING
                try:
                    transport = await self.listener.accept()
                except TransportError:
                    if self.state == ServerState.STOPPED or not self.listener.is_listening:
                        break
                    raise

                connection = await self._admit(transport)
                if connection is None:
                    continue

                self._dispatch(connection, handler)
        finally:
            await self.stop()

    async def _admit(self, transport: BaseTransport) -> Optional[Connection]:
        verified = False

        if self._enforce_same_path_client:
            self.state = ServerState.VERIFYING
            try:
                pid = verify_peer(transport, self.identity)
            except IdentityError as e:
                logger.warning(f"Rejected client on {self._pipe_name}: {e.message}")
                await transport.wait_closed()
                return None
            except BaseException:
                transport.close()
                raise
            logger.debug(f"Client process {pid} verified")
            verified = True

        connection_id = self._ids.next()
        logger.info(f"Client connected (ID: {connection_id})")
        return Connection(connection_id, transport, self.cipher, verified, self.max_frame_size)

    def _dispatch(self, connection: Connection, handler: ConnectionHandler) -> None:
        self.state = ServerState.DISPATCHED
        task = asyncio.create_task(
            self._run_handler(connection, handler),
            name=f"pipeguard-connection-{connection.id}",
        )
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, connection: Connection, handler: ConnectionHandler) -> None:
        try:
            await handler(connection)
        except asyncio.CancelledError:
            logger.debug(f"Handler cancelled (ID: {connection.id})")
            raise
        except Exception as e:
            # Contained to this connection
            logger.error(f"Handler failed (ID: {connection.id}): {e}", exc_info=True)
        finally:
            await connection.aclose()
            logger.info(f"Client disconnected (ID: {connection.id})")

    async def stop(self) -> None:
        """Stop accepting new connections. Running handlers are left alone."""
        if self.state == ServerState.STOPPED:
            return
        self.state = ServerState.STOPPED

        if self.listener is not None:
            await self.listener.close()
        logger.info(f"Server stopped: {self._pipe_name}")

    async def wait_for_handlers(self) -> None:
        """Wait for every dispatched handler to finish."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    def __repr__(self) -> str:
        return (
            f"PipeServer(pipe_name='{self._pipe_name}', state={self.state.value}, "
            f"connections={self.connections_accepted})"
        )


def create_server(config: PipeGuardConfig, identity: Optional[IdentityResolver] = None) -> PipeServer:
    """Create a server from configuration."""
    return PipeServer(
        config.pipe_name,
        cipher=config.create_cipher(),
        enforce_same_path_client=config.enforce_same_path,
        identity=identity,
        max_frame_size=config.max_frame_size,
    )
