"""
PipeGuard Identity Resolver

This module verifies that the process on the other end of a pipe runs
the same executable image, from the same path, as the current process.

Every failure is a rejection: a peer that cannot be resolved is never
treated as allowed.
"""

import os
from abc import ABC, abstractmethod
from typing import Optional

import psutil

from pipeguard.utils.errors import ConfigError, IdentityError, PipeGuardError
from pipeguard.utils.logging import get_logger

logger = get_logger(__name__)


class IdentityResolver(ABC):
    """Platform specific lookups needed for path enforcement."""

    @abstractmethod
    def process_path(self, pid: int) -> str:
        """Full executable image path of ``pid``."""
        pass

    @abstractmethod
    def self_path(self) -> str:
        """Executable image path of the current process."""
        pass

    def peer_pid(self, transport) -> int:
        """PID of the process attached to the other end of ``transport``."""
        return transport.peer_pid()


class ProcessIdentityResolver(IdentityResolver):
    """Resolver backed by psutil."""

    def process_path(self, pid: int) -> str:
        try:
            path = psutil.Process(pid).exe()
        except psutil.NoSuchProcess as e:
            raise IdentityError("Cannot open process", details={'pid': pid}) from e
        except psutil.AccessDenied as e:
            raise IdentityError("Cannot open process: access denied", details={'pid': pid}) from e
        except psutil.Error as e:
            raise IdentityError(f"Failed to query process image name: {e}", details={'pid': pid}) from e

        if not path:
            raise IdentityError("Failed to query process image name", details={'pid': pid})
        return path

    def self_path(self) -> str:
        try:
            path = psutil.Process(os.getpid()).exe()
        except psutil.Error as e:
            raise ConfigError(f"Cannot resolve own executable path: {e}") from e

        if not path:
            raise ConfigError("Cannot resolve own executable path")
        return path


_default_resolver: Optional[IdentityResolver] = None


def get_default_resolver() -> IdentityResolver:
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = ProcessIdentityResolver()
    return _default_resolver


def _normalize(path: str) -> str:
    return os.path.normpath(path).lower()


def resolve_executable_path(pid: int, resolver: Optional[IdentityResolver] = None) -> str:
    """Executable path of process ``pid``; IdentityError if it can't be opened."""
    return (resolver or get_default_resolver()).process_path(pid)


def verify_same_path(peer_pid: int, resolver: Optional[IdentityResolver] = None) -> None:
    """
    Check that ``peer_pid`` runs the executable this process runs.

    Paths are compared case-insensitively.

    Raises:
        IdentityError: Peer path could not be resolved or differs
        ConfigError: Own executable path is unavailable
    """
    resolver = resolver or get_default_resolver()

    peer_path = resolver.process_path(peer_pid)
    own_path = resolver.self_path()

    if _normalize(peer_path) != _normalize(own_path):
        raise IdentityError(
            "Process path does not match",
            details={'pid': peer_pid, 'peer_path': peer_path, 'expected_path': own_path}
        )


def verify_peer(transport, resolver: Optional[IdentityResolver] = None) -> int:
    """
    Verify the peer on ``transport``, failing closed.

    Returns:
        int: The verified peer PID
    """
    resolver = resolver or get_default_resolver()

    try:
        pid = resolver.peer_pid(transport)
        verify_same_path(pid, resolver)
    except IdentityError:
        raise
    except ConfigError:
        raise
    except PipeGuardError as e:
        raise IdentityError(f"Peer identity could not be verified: {e.message}") from e
    except Exception as e:
        raise IdentityError(
            f"Peer identity could not be verified: {str(e)}",
            details={'original_exception': type(e).__name__}
        ) from e

    logger.debug(f"Verified peer process {pid}")
    return pid
