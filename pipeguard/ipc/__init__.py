"""
PipeGuard IPC (Inter-Process Communication)

This package provides length-prefixed, optionally encrypted message
channels between processes on one host, over named pipes on Windows
and Unix sockets elsewhere.
"""

from .transport import BaseTransport, NativeTransport, PipeListener, StreamTransport
from .framing import encode_frame, read_frame, write_frame
from .crypto import DEFAULT_ENCRYPTION_KEY, MessageCipher, decrypt_message, encrypt_message
from .channel import Channel
from .client import PipeClient, create_client
from .server import Connection, ConnectionIdCounter, PipeServer, ServerState, create_server

__all__ = [
    'BaseTransport',
    'NativeTransport',
    'PipeListener',
    'StreamTransport',
    'encode_frame',
    'read_frame',
    'write_frame',
    'DEFAULT_ENCRYPTION_KEY',
    'MessageCipher',
    'encrypt_message',
    'decrypt_message',
    'Channel',
    'PipeClient',
    'create_client',
    'Connection',
    'ConnectionIdCounter',
    'PipeServer',
    'ServerState',
    'create_server',
]
