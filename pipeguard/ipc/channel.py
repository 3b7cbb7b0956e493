"""
PipeGuard Channel

This module composes the frame codec and the crypto layer over a
transport. Clients and server-side connections both talk through a
Channel, so the two ends of a pipe speak exactly the same protocol.
"""

import json
from typing import Any, Optional

from pipeguard.ipc.crypto import MessageCipher
from pipeguard.ipc.framing import read_frame, write_frame
from pipeguard.ipc.transport import BaseTransport
from pipeguard.utils.config import DEFAULT_MAX_FRAME_SIZE
from pipeguard.utils.errors import DataError, NotConnectedError
from pipeguard.utils.logging import get_logger

logger = get_logger(__name__)


class Channel:
    """
    Message channel over an exclusively owned transport.

    When a cipher is configured every message is encrypted before framing
    and decrypted after reading. Both ends must agree on this; nothing is
    negotiated on the wire.

    Not safe for concurrent use by several tasks: calls from one caller are
    sent and received strictly in order.
    """

    def __init__(
        self,
        transport: BaseTransport,
        cipher: Optional[MessageCipher] = None,
        max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE,
    ):
        self._transport: Optional[BaseTransport] = transport
        self.cipher = cipher
        self.max_frame_size = max_frame_size

    @property
    def transport(self) -> BaseTransport:
        if self._transport is None:
            raise NotConnectedError("Not connected")
        return self._transport

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def encrypted(self) -> bool:
        return self.cipher is not None

    async def send_bytes(self, data: bytes) -> None:
        """Send one message of raw bytes."""
        transport = self.transport

        if self.cipher is not None:
            data = self.cipher.encrypt(data)
        await write_frame(transport, data)

    async def receive_bytes(self) -> bytes:
        """Receive one message of raw bytes."""
        payload = await read_frame(self.transport, self.max_frame_size)

        if self.cipher is not None:
            return self.cipher.decrypt(payload)
        return payload

    async def send_string(self, message: str) -> None:
        await self.send_bytes(message.encode('utf-8'))

    async def receive_string(self) -> str:
        data = await self.receive_bytes()
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DataError(f"Invalid UTF-8 string: {str(e)}") from e

    async def send_json(self, message: Any) -> None:
        """Serialize ``message`` as JSON and send it."""
        try:
            text = json.dumps(message, separators=(',', ':'))
        except (TypeError, ValueError) as e:
            raise DataError(f"JSON serialization failed: {str(e)}") from e
        await self.send_string(text)

    async def receive_json(self) -> Any:
        text = await self.receive_string()
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise DataError(f"JSON deserialization failed: {str(e)}") from e

    def close(self) -> None:
        """Release the transport. Safe to call more than once."""
        if self._transport is None:
            return
        transport, self._transport = self._transport, None
        transport.close()

    async def aclose(self) -> None:
        """Release the transport and wait until it is fully closed."""
        if self._transport is None:
            return
        transport, self._transport = self._transport, None
        await transport.wait_closed()
