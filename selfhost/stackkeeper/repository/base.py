"""
Base protocol and types for the snapshot repository abstraction.

This module defines the SnapshotRepository protocol that all backends must
implement, along with the archive naming scheme and the retry helper used
for transient connectivity failures.

Archive naming:
    <tag>_volume_<YYYYMMDD_HHMMSS>

    e.g. db_volume_20240101_020000, app_volume_20240101_020000

Invariants:
    - Archive names are unique inside a repository
    - Timestamps are zero-padded, so lexical order is chronological order
    - Archives are immutable; only prune removes them

How to change safely:
    - Protocol changes require updating every backend
    - Never change the name format without a migration for existing repositories
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from ..errors import ConnectivityError, LockTimeoutError

if TYPE_CHECKING:
    from ..config import RepositoryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_ARCHIVE_NAME_RE = re.compile(r"^(?P<tag>[a-z]+)_volume_(?P<ts>\d{8}_\d{6})$")


class VolumeTag(Enum):
    """Volume an archive belongs to."""

    DB = "db"
    APP = "app"

    @property
    def prefix(self) -> str:
        """Archive name prefix for this tag."""
        return f"{self.value}_volume_"


def archive_name(tag: VolumeTag, timestamp: str) -> str:
    """Build the archive name for a tag and a run timestamp."""
    return f"{tag.prefix}{timestamp}"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(ARCHIVE_TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class SnapshotArchive:
    """An immutable, named archive inside a repository.

    Attributes:
        name: Archive name
        tag: Volume tag parsed from the name
        created_at: Creation time reported by the store
    """

    name: str
    tag: VolumeTag
    created_at: datetime

    @property
    def timestamp(self) -> str:
        """The sortable timestamp suffix of the name."""
        return self.name[len(self.tag.prefix):]

    @classmethod
    def parse(cls, name: str, created_at: Optional[datetime] = None) -> Optional[SnapshotArchive]:
        """Parse an archive name.

        Returns None for names that do not follow the naming scheme, so
        foreign archives in a shared repository are ignored.

        Args:
            name: Archive name
            created_at: Creation time, defaults to the timestamp in the name
        """
        match = _ARCHIVE_NAME_RE.match(name)
        if not match:
            return None
        try:
            tag = VolumeTag(match.group("tag"))
            stamped = datetime.strptime(match.group("ts"), ARCHIVE_TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return cls(name=name, tag=tag, created_at=created_at or stamped)

    def __str__(self) -> str:
        return self.name


@runtime_checkable
class SnapshotRepository(Protocol):
    """Protocol for snapshot repository backends.

    Mutating operations (init, create, extract, prune, compact) run under
    the repository's exclusive lock; list and info do not take it.

    Example:
        >>> repo = BorgRepository(config)
        >>> await repo.ensure_initialized()
        >>> await repo.create("db_volume_20240101_020000", "/var/lib/mysql")
        >>> [a.name for a in await repo.list_archives()]
        ['db_volume_20240101_020000']
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable repository location."""
        ...

    @abstractmethod
    def exclusive(self) -> AbstractAsyncContextManager[Any]:
        """Hold the repository lock across several operations (re-entrant)."""
        ...

    @abstractmethod
    async def exists(self) -> bool:
        """Whether the repository has been initialized."""
        ...

    @abstractmethod
    async def init(self, encryption: str) -> None:
        """Initialize a new repository.

        Raises:
            RepositoryError: If initialization fails
        """
        ...

    @abstractmethod
    async def ensure_initialized(self) -> bool:
        """Initialize the repository if missing.

        Returns:
            True if a new repository was created
        """
        ...

    @abstractmethod
    async def create(self, name: str, source: str, compression: Optional[str] = None) -> SnapshotArchive:
        """Create an archive holding a full recursive copy of source.

        Raises:
            ConflictError: If an archive with that name exists
            RepositoryError: If the store rejects the operation
        """
        ...

    @abstractmethod
    async def list_archives(self) -> List[SnapshotArchive]:
        """List archives that follow the naming scheme, oldest name first."""
        ...

    @abstractmethod
    async def extract(self, name: str, target: str) -> None:
        """Extract an archive's contents into target.

        Raises:
            RepositoryError: If the archive is missing or extraction fails
        """
        ...

    @abstractmethod
    async def prune(
        self,
        prefix: Optional[str] = None,
        keep_daily: Optional[int] = None,
        keep_weekly: Optional[int] = None,
        keep_monthly: Optional[int] = None,
    ) -> List[str]:
        """Remove archives not kept by any given rule.

        Args:
            prefix: Only consider archives whose name starts with prefix

        Returns:
            Names of removed archives
        """
        ...

    @abstractmethod
    async def compact(self) -> None:
        """Free space held by pruned archives."""
        ...

    @abstractmethod
    async def info(self) -> str:
        """Repository statistics as printable text."""
        ...


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    description: str,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> T:
    """Run operation, retrying ConnectivityError with exponential backoff.

    Lock timeouts are not retried: the lock wait is already bounded.

    Raises:
        ConnectivityError: The last failure, once timeout_seconds is spent
    """
    deadline = time.monotonic() + timeout_seconds
    delay = initial_delay
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except LockTimeoutError:
            raise
        except ConnectivityError as e:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            wait = min(delay, remaining)
            logger.warning(
                f"{description} failed, retrying in {wait:.1f}s",
                extra={"attempt": attempt, "error": str(e)},
            )
            await asyncio.sleep(wait)
            delay = min(delay * 2, max_delay)


def create_repository(config: "RepositoryConfig") -> SnapshotRepository:
    """Factory function to create a repository client from configuration.

    Args:
        config: Repository configuration

    Returns:
        BorgRepository for the configured location
    """
    from .borg import BorgRepository

    return BorgRepository(config)
