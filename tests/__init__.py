"""
Stackkeeper Test Suite.

This package contains:
- unit/: Unit tests (no external tools, subprocesses replaced by fakes)
- integration/: Integration tests (in-memory repository and database, real directories)
"""
