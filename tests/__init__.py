"""
PipeGuard Test Suite

This package contains tests for PipeGuard including:
- Unit tests for framing, crypto, identity and configuration
- Integration tests running clients and servers over real pipes
- Path enforcement tests against spawned interpreter processes
"""
