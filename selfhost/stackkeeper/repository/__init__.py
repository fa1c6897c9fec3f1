"""
Snapshot repository client for Stackkeeper.

This module provides the repository abstraction:
- SnapshotRepository: Protocol every backend implements
- BorgRepository: Production backend driving the borg CLI
- InMemoryRepository: Backend for tests and local development
- RepositoryLock: Cross-process exclusive lock for mutating operations

Usage:
    from selfhost.stackkeeper.repository import create_repository

    repo = create_repository(config.repository)
    await repo.ensure_initialized()
    await repo.create("db_volume_20240101_020000", "/check_db_data")
"""

from .base import (
    ARCHIVE_TIMESTAMP_FORMAT,
    SnapshotArchive,
    SnapshotRepository,
    VolumeTag,
    archive_name,
    create_repository,
    format_timestamp,
    retry_with_backoff,
)
from .borg import BorgRepository
from .lock import RepositoryLock
from .memory import InMemoryRepository
from .retention import select_kept, select_pruned

__all__ = [
    "ARCHIVE_TIMESTAMP_FORMAT",
    "SnapshotArchive",
    "SnapshotRepository",
    "VolumeTag",
    "archive_name",
    "create_repository",
    "format_timestamp",
    "retry_with_backoff",
    "BorgRepository",
    "RepositoryLock",
    "InMemoryRepository",
    "select_kept",
    "select_pruned",
]
