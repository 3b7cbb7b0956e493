"""
PipeGuard - secured message channels over named pipes

PipeGuard lets two processes on the same host exchange discrete messages
over a named pipe, optionally encrypted with ChaCha20-Poly1305, and
optionally only when the peer runs the very same executable as the caller.
"""

__version__ = "0.1.0"
__author__ = "PipeGuard Team"
__license__ = "MIT"

# IPC imports
from pipeguard.ipc.client import PipeClient, create_client
from pipeguard.ipc.server import Connection, PipeServer, create_server
from pipeguard.ipc.channel import Channel
from pipeguard.ipc.crypto import DEFAULT_ENCRYPTION_KEY, MessageCipher

# Security imports
from pipeguard.security.identity import IdentityResolver, verify_same_path

# Utility imports
from pipeguard.utils.config import PipeGuardConfig
from pipeguard.utils.errors import (
    PipeGuardError,
    TransportError,
    NotConnectedError,
    DataError,
    FrameTooLargeError,
    IdentityError,
    ConfigError,
)
from pipeguard.utils.platform import format_pipe_name

# Version info
VERSION_INFO = tuple(int(part) for part in __version__.split('.') if part.isdigit())

__all__ = [
    # Core classes
    "PipeClient",
    "PipeServer",
    "Connection",
    "Channel",
    "MessageCipher",
    "DEFAULT_ENCRYPTION_KEY",
    "create_client",
    "create_server",

    # Security
    "IdentityResolver",
    "verify_same_path",

    # Configuration
    "PipeGuardConfig",
    "format_pipe_name",

    # Exceptions
    "PipeGuardError",
    "TransportError",
    "NotConnectedError",
    "DataError",
    "FrameTooLargeError",
    "IdentityError",
    "ConfigError",

    # Version info
    "__version__",
    "VERSION_INFO",
]
