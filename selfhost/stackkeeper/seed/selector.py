"""
Seed file selection.

Picks the one dump to bootstrap an empty database from, among the
*.sql / *.sql.gz files of the seed directory. Rules, first match wins:

    1. exactly one candidate             -> it
    2. real (non-symlink) .sql files     -> the first
    3. real .sql.gz files                -> the first
    4. a "*_latest.sql" symlink          -> it, then "*_latest.sql.gz"
    5. any .sql                          -> the first, then any .sql.gz

"first" is lexical path order. Symlinks named *_latest are convenience
pointers that go stale when dumps are dropped in out of band, so concrete
files win over them, and uncompressed dumps win over compressed ones.

Invariants:
    - The result is one candidate or None, never ambiguous
    - The same candidate set always yields the same result
    - Read-only: discovery and selection never modify the seed directory
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

SQL_SUFFIX = ".sql"
GZ_SUFFIX = ".sql.gz"
LATEST_SQL_SUFFIX = "_latest.sql"
LATEST_GZ_SUFFIX = "_latest.sql.gz"


@dataclass(frozen=True)
class SeedCandidate:
    """A discoverable seed file.

    Attributes:
        path: Path of the file (or symlink)
        is_compressed: Whether the dump is gzip-compressed
        is_symlink: Whether path is a symbolic link
        size_bytes: Size of the resolved file
        mtime: Modification time of the resolved file
    """

    path: str
    is_compressed: bool
    is_symlink: bool
    size_bytes: int
    mtime: datetime

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def from_path(cls, path: str) -> SeedCandidate:
        """Observe a file on disk (follows symlinks for size and mtime)."""
        stat = os.stat(path)
        return cls(
            path=path,
            is_compressed=path.endswith(GZ_SUFFIX),
            is_symlink=os.path.islink(path),
            size_bytes=stat.st_size,
            mtime=datetime.fromtimestamp(stat.st_mtime),
        )


@dataclass(frozen=True)
class SelectedSeed:
    """The candidate chosen for import and the rule that chose it."""

    candidate: SeedCandidate
    reason: str

    @property
    def path(self) -> str:
        return self.candidate.path


def is_seed_name(name: str) -> bool:
    return name.endswith(SQL_SUFFIX) or name.endswith(GZ_SUFFIX)


def discover_candidates(seed_dir: str) -> List[SeedCandidate]:
    """List seed candidates in seed_dir, in lexical path order.

    Broken symlinks, directories and anything that is not *.sql or
    *.sql.gz (including *.tmp leftovers of an interrupted export) are
    skipped. A missing directory yields no candidates.
    """
    root = Path(seed_dir)
    if not root.is_dir():
        return []

    candidates = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if not is_seed_name(entry.name) or not entry.is_file():
            continue
        try:
            candidates.append(SeedCandidate.from_path(str(entry)))
        except OSError as e:
            logger.warning(f"Skipping unreadable seed file {entry}: {e}")
    return candidates


def _first(candidates: Iterable[SeedCandidate]) -> Optional[SeedCandidate]:
    return min(candidates, key=lambda c: c.path, default=None)


def select_seed(candidates: Iterable[SeedCandidate]) -> Optional[SelectedSeed]:
    """Choose the seed to import.

    Returns:
        SelectedSeed, or None when there is no candidate
    """
    candidates = sorted(candidates, key=lambda c: c.path)
    if not candidates:
        return None
    if len(candidates) == 1:
        return SelectedSeed(candidates[0], "only candidate")

    sql = [c for c in candidates if not c.is_compressed]
    gz = [c for c in candidates if c.is_compressed]

    chain = [
        ([c for c in sql if not c.is_symlink], "real SQL file"),
        ([c for c in gz if not c.is_symlink], "real GZ file"),
        ([c for c in sql if c.name.endswith(LATEST_SQL_SUFFIX)], "latest SQL symlink"),
        ([c for c in gz if c.name.endswith(LATEST_GZ_SUFFIX)], "latest GZ symlink"),
        (sql, "first SQL file"),
        (gz, "first GZ file"),
    ]
    for group, reason in chain:
        chosen = _first(group)
        if chosen is not None:
            return SelectedSeed(chosen, reason)
    return None


def log_candidates(candidates: Iterable[SeedCandidate]) -> None:
    """Log the available seed files for operators."""
    for candidate in candidates:
        logger.info(
            f"  {candidate.name} ({candidate.size_bytes} bytes, "
            f"modified: {candidate.mtime:%Y-%m-%d}"
            f"{', symlink' if candidate.is_symlink else ''})"
        )
