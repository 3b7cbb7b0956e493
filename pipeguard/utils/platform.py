"""
PipeGuard Platform Utilities

This module provides pipe name normalization, the Unix socket mapping
of pipe names and the OS specific lookups of the process on the other end of a pipe.
"""

import os
import platform
import socket
import struct
import tempfile
from pathlib import Path
from typing import Any

from pipeguard.utils.errors import TransportError
from pipeguard.utils.logging import get_logger

logger = get_logger(__name__)

PIPE_PREFIX = "\\\\.\\pipe\\"
SOCKET_DIR_NAME = "pipeguard"

# macOS <sys/un.h>
_SOL_LOCAL = 0
_LOCAL_PEERPID = 0x002


def format_pipe_name(name: str) -> str:
    """Normalize a logical pipe name into the Windows named pipe namespace."""
    if name.startswith(PIPE_PREFIX):
        return name
    return f"{PIPE_PREFIX}{name}"


def logical_pipe_name(pipe_name: str) -> str:
    """Strip the namespace marker from a normalized pipe name."""
    if pipe_name.startswith(PIPE_PREFIX):
        return pipe_name[len(PIPE_PREFIX):]
    return pipe_name


def get_socket_directory() -> Path:
    """Directory holding the Unix sockets that stand in for named pipes."""
    socket_dir = Path(tempfile.gettempdir()) / SOCKET_DIR_NAME
    socket_dir.mkdir(exist_ok=True, mode=0o700)  # Secure permissions
    return socket_dir


def get_socket_path(pipe_name: str) -> str:
    """Map a normalized pipe name onto its Unix socket path."""
    name = logical_pipe_name(pipe_name)
    if not name or os.sep in name or (os.altsep and os.altsep in name):
        raise TransportError(
            f"Invalid pipe name: {pipe_name!r}",
            details={'pipe_name': pipe_name}
        )
    return str(get_socket_directory() / f"{name}.sock")


def get_socket_peer_pid(sock: Any) -> int:
    """
    Get the PID of the process on the other end of a Unix socket.

    Args:
        sock: Connected AF_UNIX socket (or asyncio TransportSocket)

    Returns:
        int: Peer process identifier
    """
    system = platform.system()
    try:
        if system == 'Linux':
            creds = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, struct.calcsize('3i'))
            pid, _uid, _gid = struct.unpack('3i', creds)
        elif system == 'Darwin':
            raw = sock.getsockopt(_SOL_LOCAL, _LOCAL_PEERPID, struct.calcsize('i'))
            pid, = struct.unpack('i', raw)
        else:
            raise TransportError(f"Peer PID lookup not supported on {system}")
    except OSError as e:
        raise TransportError(f"Failed to get peer PID: {str(e)}") from e

    if pid <= 0:
        raise TransportError("Failed to get peer PID", details={'pid': pid})
    return pid


def get_named_pipe_peer_pid(handle: int, is_server: bool) -> int:
    """
    Get the PID of the process on the other end of a Windows named pipe.

    The server end asks for the client's PID and the client end asks for
    the server's PID.
    """
    import win32pipe

    try:
        if is_server:
            return win32pipe.GetNamedPipeClientProcessId(handle)
        return win32pipe.GetNamedPipeServerProcessId(handle)
    except Exception as e:
        side = "client" if is_server else "server"
        raise TransportError(f"Failed to get {side} PID: {str(e)}") from e
