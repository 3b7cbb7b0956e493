"""
PipeGuard Client

This module provides the client end of a pipe: an explicit connect step,
optional verification that the server runs the same executable, then
symmetric send/receive through a Channel.
"""

from typing import Any, Optional

from pipeguard.ipc.channel import Channel
from pipeguard.ipc.crypto import MessageCipher
from pipeguard.ipc.transport import NativeTransport
from pipeguard.security.identity import IdentityResolver, get_default_resolver, verify_peer
from pipeguard.utils.config import DEFAULT_MAX_FRAME_SIZE, PipeGuardConfig
from pipeguard.utils.errors import NotConnectedError, PipeGuardError
from pipeguard.utils.logging import get_logger
from pipeguard.utils.platform import format_pipe_name

logger = get_logger(__name__)


class PipeClient:
    """
    Named pipe client.

    Example:
        >>> async with PipeClient.encrypted("my_pipe") as client:
        ...     await client.send_string("ping")
        ...     reply = await client.receive_string()
    """

    def __init__(
        self,
        pipe_name: str,
        cipher: Optional[MessageCipher] = None,
        enforce_same_path_server: bool = False,
        identity: Optional[IdentityResolver] = None,
        max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE,
    ):
        """
        Initialize client.

        Args:
            pipe_name: Logical or fully qualified pipe name
            cipher: Message cipher, None for plaintext
            enforce_same_path_server: Require the server to run this executable
            identity: Resolver used for path enforcement
            max_frame_size: Largest accepted incoming frame, None for no bound
        """
        self._pipe_name = format_pipe_name(pipe_name)
        self.cipher = cipher
        self._enforce_same_path_server = enforce_same_path_server
        self.identity = identity or get_default_resolver()
        self.max_frame_size = max_frame_size
        self._channel: Optional[Channel] = None

    @classmethod
    def encrypted(cls, pipe_name: str, key: Optional[bytes] = None, **kwargs) -> "PipeClient":
        """Client with encryption; uses the shared default key when ``key`` is None."""
        return cls(pipe_name, cipher=MessageCipher.from_key(key), **kwargs)

    @property
    def pipe_name(self) -> str:
        return self._pipe_name

    @property
    def enforces_same_path(self) -> bool:
        return self._enforce_same_path_server

    def enforce_same_path_server(self, enforce: bool) -> None:
        """Require the server to have the same executable path as this process."""
        self._enforce_same_path_server = enforce

    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_open

    @property
    def channel(self) -> Channel:
        if not self.is_connected():
            raise NotConnectedError("Not connected", details={'pipe_name': self._pipe_name})
        return self._channel

    async def connect(self) -> None:
        """
        Connect to the server.

        Raises:
            TransportError: The pipe could not be opened
            IdentityError: Enforcement is on and the server failed verification
        """
        if self.is_connected():
            raise PipeGuardError("Already connected", details={'pipe_name': self._pipe_name})

        transport = await NativeTransport.connect(self._pipe_name)

        if self._enforce_same_path_server:
            try:
                pid = verify_peer(transport, self.identity)
            except PipeGuardError as e:
                logger.warning(f"Server failed path verification on {self._pipe_name}: {e.message}")
                await transport.wait_closed()
                raise
            logger.debug(f"Server process {pid} verified")

        self._channel = Channel(transport, self.cipher, self.max_frame_size)
        logger.info(f"Connected to {self._pipe_name}")

    def verify_server_path(self) -> None:
        """Re-check the server's executable path if enforcement is enabled."""
        if not self._enforce_same_path_server:
            return
        verify_peer(self.channel.transport, self.identity)

    async def send_bytes(self, data: bytes) -> None:
        await self.channel.send_bytes(data)

    async def receive_bytes(self) -> bytes:
        return await self.channel.receive_bytes()

    async def send_string(self, message: str) -> None:
        await self.channel.send_string(message)

    async def receive_string(self) -> str:
        return await self.channel.receive_string()

    async def send_json(self, message: Any) -> None:
        await self.channel.send_json(message)

    async def receive_json(self) -> Any:
        return await self.channel.receive_json()

    def disconnect(self) -> None:
        """Release the transport. Safe to call more than once."""
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        channel.close()
        logger.debug(f"Disconnected from {self._pipe_name}")

    async def aclose(self) -> None:
        """Disconnect and wait for the transport to close."""
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        await channel.aclose()
        logger.debug(f"Disconnected from {self._pipe_name}")

    async def __aenter__(self) -> "PipeClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def __del__(self):
        if getattr(self, '_channel', None) is not None:
            self.disconnect()

    def __repr__(self) -> str:
        return (
            f"PipeClient(pipe_name='{self._pipe_name}', encrypted={self.cipher is not None}, "
            f"connected={self.is_connected()})"
        )


def create_client(config: PipeGuardConfig, identity: Optional[IdentityResolver] = None) -> PipeClient:
    """Create a client from configuration."""
    return PipeClient(
        config.pipe_name,
        cipher=config.create_cipher(),
        enforce_same_path_server=config.enforce_same_path,
        identity=identity,
        max_frame_size=config.max_frame_size,
    )
