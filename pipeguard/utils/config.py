"""
PipeGuard Configuration Management

This module provides channel configuration loaded from JSON-only
files, environment variable support and secure defaults.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pipeguard.utils.errors import ConfigError, handle_exception
from pipeguard.utils.logging import get_logger, set_level

logger = get_logger(__name__)

ENV_PREFIX = "PIPEGUARD_"
KEY_SIZE = 32
DEFAULT_MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16MB

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off', ''}


def parse_key(value: Union[str, bytes, None]) -> Optional[bytes]:
    """Parse a 256-bit key given as raw bytes or a hex string."""
    if value is None:
        return None

    if isinstance(value, str):
        try:
            value = bytes.fromhex(value.strip())
        except ValueError as e:
            raise ConfigError("Encryption key must be a hex string") from e

    if len(value) != KEY_SIZE:
        raise ConfigError(
            f"Encryption key must be {KEY_SIZE} bytes, got {len(value)}",
            details={'key_length': len(value)}
        )
    return bytes(value)


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


def _parse_frame_size(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        size = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid max_frame_size: {value!r}") from e
    if size < 0:
        raise ConfigError(f"max_frame_size must not be negative: {size}")
    # 0 disables the bound
    return size or None


@dataclass
class PipeGuardConfig:
    """Configuration shared by clients and servers."""

    pipe_name: str = "pipeguard"
    encrypted: bool = False
    key: Optional[bytes] = field(default=None, repr=False)
    enforce_same_path: bool = False
    max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE
    log_level: str = "INFO"

    def __post_init__(self):
        self.key = parse_key(self.key)
        self.max_frame_size = _parse_frame_size(self.max_frame_size)
        if self.key is not None and not self.encrypted:
            logger.warning("Encryption key configured but encryption is disabled")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipeGuardConfig":
        """Build configuration from a plain dictionary."""
        known = {'pipe_name', 'encrypted', 'key', 'enforce_same_path', 'max_frame_size', 'log_level'}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}",
                details={'unknown_keys': sorted(unknown)}
            )

        kwargs: Dict[str, Any] = {}
        if 'pipe_name' in data:
            if not isinstance(data['pipe_name'], str) or not data['pipe_name']:
                raise ConfigError("pipe_name must be a non-empty string")
            kwargs['pipe_name'] = data['pipe_name']
        if 'encrypted' in data:
            kwargs['encrypted'] = _parse_bool('encrypted', data['encrypted'])
        if 'key' in data:
            kwargs['key'] = data['key']
        if 'enforce_same_path' in data:
            kwargs['enforce_same_path'] = _parse_bool('enforce_same_path', data['enforce_same_path'])
        if 'max_frame_size' in data:
            kwargs['max_frame_size'] = _parse_frame_size(data['max_frame_size'])
        if 'log_level' in data:
            kwargs['log_level'] = str(data['log_level']).upper()

        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, environ: Optional[Dict[str, str]] = None) -> "PipeGuardConfig":
        """
        Build configuration from environment variables.

        Recognized variables (with the default prefix): PIPEGUARD_PIPE_NAME,
        PIPEGUARD_ENCRYPT, PIPEGUARD_KEY, PIPEGUARD_ENFORCE_SAME_PATH,
        PIPEGUARD_MAX_FRAME_SIZE and PIPEGUARD_LOG_LEVEL.
        """
        environ = os.environ if environ is None else environ
        mapping = {
            'PIPE_NAME': 'pipe_name',
            'ENCRYPT': 'encrypted',
            'KEY': 'key',
            'ENFORCE_SAME_PATH': 'enforce_same_path',
            'MAX_FRAME_SIZE': 'max_frame_size',
            'LOG_LEVEL': 'log_level',
        }

        data = {
            option: environ[prefix + suffix]
            for suffix, option in mapping.items()
            if prefix + suffix in environ
        }
        return cls.from_dict(data)

    @classmethod
    @handle_exception
    def from_file(cls, config_file: Union[str, Path]) -> "PipeGuardConfig":
        """Load configuration from a JSON file."""
        config_path = Path(config_file)
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
            logger.debug(f"Loaded configuration from {config_path}")
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(
                f"Failed to load configuration from {config_path}: {str(e)}",
                details={'config_file': str(config_path), 'error': str(e)}
            ) from e

        if not isinstance(data, dict):
            raise ConfigError(
                "Configuration file must contain a JSON object",
                details={'config_file': str(config_path)}
            )
        return cls.from_dict(data)

    def create_cipher(self):
        """Create the message cipher, or None when encryption is disabled."""
        if not self.encrypted:
            return None

        from pipeguard.ipc.crypto import MessageCipher

        if self.key is None:
            return MessageCipher.default()
        return MessageCipher(self.key)

    def configure_logging(self) -> None:
        """Apply ``log_level`` to every PipeGuard logger in this process."""
        set_level(self.log_level)

    def __repr__(self) -> str:
        return (
            f"PipeGuardConfig(pipe_name='{self.pipe_name}', encrypted={self.encrypted}, "
            f"custom_key={self.key is not None}, enforce_same_path={self.enforce_same_path}, "
            f"max_frame_size={self.max_frame_size})"
        )
