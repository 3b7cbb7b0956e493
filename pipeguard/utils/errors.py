"""
PipeGuard exception classes

This module defines all custom exceptions used throughout PipeGuard,
providing clear error messages and proper exception hierarchy.
"""

import asyncio
import functools
import inspect
from typing import Optional


class PipeGuardError(Exception):
    """Base exception for all PipeGuard errors"""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransportError(PipeGuardError):
    """Errors raised by the underlying pipe (broken pipe, closed stream, OS denial)"""
    pass


class NotConnectedError(PipeGuardError):
    """Operation attempted before connect/accept or after disconnect"""
    pass


class DataError(PipeGuardError):
    """Malformed or unauthenticated payload"""
    pass


class FrameTooLargeError(DataError):
    """Frame length prefix exceeds the configured maximum"""
    pass


class IdentityError(PipeGuardError):
    """Peer process path could not be resolved or did not match"""
    pass


class ConfigError(PipeGuardError):
    """Errors related to configuration management"""
    pass


_TRANSPORT_EXCEPTIONS = (OSError, EOFError, asyncio.IncompleteReadError)


def _convert(func, exc: Exception) -> PipeGuardError:
    if isinstance(exc, _TRANSPORT_EXCEPTIONS):
        return TransportError(
            f"I/O failure in {func.__name__}: {str(exc) or type(exc).__name__}",
            details={'original_exception': type(exc).__name__}
        )
    return PipeGuardError(
        f"Unexpected error in {func.__name__}: {str(exc)}",
        details={'original_exception': type(exc).__name__}
    )


def handle_exception(func):
    """
    Decorator to handle exceptions and convert them to PipeGuard exceptions.

    Works for plain functions and coroutine functions. OS level I/O failures
    become TransportError, anything else unexpected becomes PipeGuardError.
    """
    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except PipeGuardError:
                # Re-raise PipeGuard exceptions as-is
                raise
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise _convert(func, e) from e
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PipeGuardError:
            # Re-raise PipeGuard exceptions as-is
            raise
        except Exception as e:
            raise _convert(func, e) from e
    return wrapper
