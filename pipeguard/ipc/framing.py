"""
PipeGuard Frame Codec

Every message on the wire is one frame::

    [4 bytes, little-endian unsigned] length L
    [L bytes] payload
"""

import struct
from typing import Optional

from pipeguard.ipc.transport import BaseTransport
from pipeguard.utils.config import DEFAULT_MAX_FRAME_SIZE
from pipeguard.utils.errors import FrameTooLargeError
from pipeguard.utils.logging import get_logger

logger = get_logger(__name__)

HEADER = struct.Struct('<I')
HEADER_SIZE = HEADER.size
MAX_PAYLOAD_SIZE = 0xFFFFFFFF


def encode_frame(payload: bytes) -> bytes:
    """Prefix ``payload`` with its little-endian u32 length."""
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise FrameTooLargeError(
            f"Message too large: {len(payload)} bytes",
            details={'length': len(payload), 'limit': MAX_PAYLOAD_SIZE}
        )
    return HEADER.pack(len(payload)) + bytes(payload)


def decode_header(header: bytes, max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE) -> int:
    """Return the payload length announced by a 4 byte header."""
    length, = HEADER.unpack(header)
    if max_frame_size is not None and length > max_frame_size:
        raise FrameTooLargeError(
            f"Message too large: {length} bytes > {max_frame_size}",
            details={'length': length, 'limit': max_frame_size}
        )
    return length


async def write_frame(transport: BaseTransport, payload: bytes) -> None:
    """Write one frame and flush it."""
    await transport.write_all(encode_frame(payload))
    logger.debug(f"Sent frame: {len(payload)} bytes")


async def read_frame(
    transport: BaseTransport,
    max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE
) -> bytes:
    """
    Read one frame.

    Args:
        transport: Stream to read from
        max_frame_size: Largest accepted payload, None for no bound

    Returns:
        bytes: Frame payload

    Raises:
        TransportError: Stream closed before the frame was complete
        FrameTooLargeError: Announced length exceeds ``max_frame_size``
    """
    length = decode_header(await transport.read_exactly(HEADER_SIZE), max_frame_size)
    payload = await transport.read_exactly(length)
    logger.debug(f"Received frame: {length} bytes")
    return payload
