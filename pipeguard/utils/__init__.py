"""
Utility modules

This package provides common utilities, error handling,
configuration management, and platform abstractions.
"""

from pipeguard.utils.errors import (
    PipeGuardError,
    TransportError,
    NotConnectedError,
    DataError,
    FrameTooLargeError,
    IdentityError,
    ConfigError,
)
from pipeguard.utils.logging import get_logger
from pipeguard.utils.config import PipeGuardConfig
from pipeguard.utils.platform import format_pipe_name

__all__ = [
    # Exceptions
    "PipeGuardError",
    "TransportError",
    "NotConnectedError",
    "DataError",
    "FrameTooLargeError",
    "IdentityError",
    "ConfigError",

    # Utilities
    "get_logger",
    "PipeGuardConfig",
    "format_pipe_name",
]
