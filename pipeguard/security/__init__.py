"""
Security modules

This package provides peer process verification: only processes
running the same executable as the caller are allowed through.
"""

from pipeguard.security.identity import (
    IdentityResolver,
    ProcessIdentityResolver,
    get_default_resolver,
    resolve_executable_path,
    verify_same_path,
    verify_peer,
)

__all__ = [
    "IdentityResolver",
    "ProcessIdentityResolver",
    "get_default_resolver",
    "resolve_executable_path",
    "verify_same_path",
    "verify_peer",
]
