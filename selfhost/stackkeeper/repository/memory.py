"""
In-memory snapshot repository for testing.

This module provides a fully functional repository backend for:
- Unit tests
- Integration tests of the backup/restore executors
- Local development without a borg binary

Archives hold a copy of every directory, regular file (content and mode)
and symlink of the source tree, so extract(create(X)) reproduces X
byte for byte.

Invariants:
    - All data is lost on process exit
    - Archive names are unique; create never overwrites
    - Pruning follows the same keep rules as borg (see retention.py)
    - Mutating operations serialize on a re-entrant per-instance lock

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the SnapshotRepository protocol
    - Add failure injection hooks rather than subclassing in tests
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Dict, List, Optional, Tuple, Type

from ..errors import ConflictError, RepositoryError, RepositoryNotFoundError
from .base import SnapshotArchive
from .retention import select_pruned

logger = logging.getLogger(__name__)


@dataclass
class StoredTree:
    """Captured contents of one archive."""

    directories: List[str] = field(default_factory=list)
    files: Dict[str, Tuple[bytes, int]] = field(default_factory=dict)
    symlinks: Dict[str, str] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return sum(len(content) for content, _ in self.files.values())


class _ReentrantLock:
    """asyncio lock that the owning task may re-acquire."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._depth > 0

    async def __aenter__(self) -> _ReentrantLock:
        task = asyncio.current_task()
        if self._owner is task and self._depth:
            self._depth += 1
            return self
        await self._lock.acquire()
        self._owner = task
        self._depth = 1
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self._depth -= 1
        if not self._depth:
            self._owner = None
            self._lock.release()


def _capture(source: Path) -> StoredTree:
    tree = StoredTree()
    for root, dirs, files in os.walk(source):
        root_path = Path(root)
        for name in sorted(dirs):
            path = root_path / name
            rel = str(path.relative_to(source))
            if path.is_symlink():
                tree.symlinks[rel] = os.readlink(path)
            else:
                tree.directories.append(rel)
        for name in sorted(files):
            path = root_path / name
            rel = str(path.relative_to(source))
            if path.is_symlink():
                tree.symlinks[rel] = os.readlink(path)
            else:
                tree.files[rel] = (path.read_bytes(), stat.S_IMODE(path.stat().st_mode))
    return tree


def _materialize(tree: StoredTree, target: Path) -> None:
    target.mkdir(parents=True, exist_ok=True)
    for rel in tree.directories:
        (target / rel).mkdir(parents=True, exist_ok=True)
    for rel, (content, mode) in tree.files.items():
        path = target / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        os.chmod(path, mode)
    for rel, link_target in tree.symlinks.items():
        path = target / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_symlink() or path.exists():
            path.unlink()
        os.symlink(link_target, path)


class InMemoryRepository:
    """In-memory implementation of SnapshotRepository for testing.

    Attributes:
        name: Location label reported by `location`
        archives: Stored archives by name

    Failure injection:
        fail(operation, error, archive=None) makes the next matching call
        raise error. `archive` narrows create/extract failures to one name
        prefix (e.g. "app_volume_").

    Example:
        >>> repo = InMemoryRepository()
        >>> await repo.ensure_initialized()
        >>> await repo.create("db_volume_20240101_020000", "/tmp/db")
        >>> [a.name for a in await repo.list_archives()]
        ['db_volume_20240101_020000']
    """

    def __init__(self, name: str = "memory://repository", initialized: bool = False) -> None:
        """Initialize the repository.

        Args:
            name: Location label
            initialized: Start out initialized (skips init in tests)
        """
        self.name = name
        self.archives: Dict[str, Tuple[SnapshotArchive, StoredTree]] = {}
        self.encryption: Optional[str] = "none" if initialized else None
        self.compact_count = 0
        self._initialized = initialized
        self._lock = _ReentrantLock()
        self._failures: List[Tuple[str, Exception, Optional[str]]] = []

    @property
    def location(self) -> str:
        return self.name

    @property
    def lock_held(self) -> bool:
        """Whether a mutating operation currently holds the lock."""
        return self._lock.held

    def exclusive(self) -> _ReentrantLock:
        return self._lock

    def fail(self, operation: str, error: Exception, archive: Optional[str] = None) -> None:
        """Make the next matching operation raise error."""
        self._failures.append((operation, error, archive))

    def _check_failure(self, operation: str, name: Optional[str] = None) -> None:
        for i, (op, error, prefix) in enumerate(self._failures):
            if op != operation:
                continue
            if prefix is not None and (name is None or not name.startswith(prefix)):
                continue
            del self._failures[i]
            raise error

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise RepositoryNotFoundError(
                f"Repository {self.name} does not exist", operation=operation
            )

    async def exists(self) -> bool:
        return self._initialized

    async def init(self, encryption: str) -> None:
        async with self._lock:
            self._check_failure("init")
            if self._initialized:
                raise RepositoryError(
                    f"Repository {self.name} already exists", operation="init"
                )
            self._initialized = True
            self.encryption = encryption
        logger.debug("InMemoryRepository initialized", extra={"encryption": encryption})

    async def ensure_initialized(self) -> bool:
        if self._initialized:
            return False
        await self.init("none")
        return True

    async def create(
        self, name: str, source: str, compression: Optional[str] = None
    ) -> SnapshotArchive:
        archive = SnapshotArchive.parse(name)
        if archive is None:
            raise ValueError(f"Archive name does not follow <tag>_volume_<timestamp>: {name}")

        async with self._lock:
            self._require_initialized("create")
            self._check_failure("create", name)
            if name in self.archives:
                raise ConflictError(f"Archive {name} already exists", resource=name)
            source_path = Path(source)
            if not source_path.is_dir():
                raise RepositoryError(
                    f"Cannot snapshot {source}: not a directory", operation="create"
                )
            self.archives[name] = (archive, _capture(source_path))

        logger.debug("Archive stored in memory", extra={"archive": name, "source": source})
        return archive

    async def list_archives(self) -> List[SnapshotArchive]:
        self._require_initialized("list")
        self._check_failure("list")
        return sorted((a for a, _ in self.archives.values()), key=lambda a: a.name)

    async def extract(self, name: str, target: str) -> None:
        async with self._lock:
            self._require_initialized("extract")
            self._check_failure("extract", name)
            if name not in self.archives:
                raise RepositoryError(f"Archive {name} does not exist", operation="extract")
            _, tree = self.archives[name]
            _materialize(tree, Path(target))

    async def prune(
        self,
        prefix: Optional[str] = None,
        keep_daily: Optional[int] = None,
        keep_weekly: Optional[int] = None,
        keep_monthly: Optional[int] = None,
    ) -> List[str]:
        rules = {
            rule: n
            for rule, n in (("daily", keep_daily), ("weekly", keep_weekly), ("monthly", keep_monthly))
            if n is not None and n > 0
        }
        if not rules:
            return []

        async with self._lock:
            self._require_initialized("prune")
            self._check_failure("prune", prefix)
            candidates = [
                archive
                for archive, _ in self.archives.values()
                if prefix is None or archive.name.startswith(prefix)
            ]
            pruned = select_pruned(candidates, rules)
            for name in pruned:
                del self.archives[name]

        logger.debug("In-memory prune", extra={"prefix": prefix, "pruned": pruned})
        return pruned

    async def compact(self) -> None:
        async with self._lock:
            self._require_initialized("compact")
            self._check_failure("compact")
            self.compact_count += 1

    async def info(self) -> str:
        self._require_initialized("info")
        total = sum(tree.size_bytes for _, tree in self.archives.values())
        return (
            f"Repository: {self.name}\n"
            f"Encryption: {self.encryption}\n"
            f"Archives: {len(self.archives)}\n"
            f"Stored bytes: {total}\n"
        )
