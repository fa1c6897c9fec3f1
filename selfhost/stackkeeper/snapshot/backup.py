"""
Backup executor.

One backup run snapshots every volume into the repository under a shared
timestamp, then applies retention:

    1. ts = now, formatted YYYYMMDD_HHMMSS
    2. create db_volume_<ts>, app_volume_<ts>       (fatal on failure)
    3. prune per tag prefix with the active tiers   (warning on failure)
    4. compact                                      (warning on failure)

Invariants:
    - Both archives of a run share one timestamp
    - An existing archive name is a ConflictError; nothing is created
    - A create failure aborts the run before any pruning
    - One archive created and the other failed is a PartialFailure
    - Prune/compact failures never fail the run; they become PolicyWarnings
    - All steps run under one hold of the repository lock

How to change safely:
    - Keep prune strictly after both creates: pruning after a partial
      set could remove the last complete pair
    - Do not add an unscoped prune: every run stores one archive per tag,
      so a repository-wide keep-daily would drop half of each day's pair
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from ..config import RetentionPolicy
from ..decision.detector import VolumeSpec
from ..errors import ConflictError, PartialFailure, PolicyWarning, StackkeeperError
from ..repository.base import (
    SnapshotArchive,
    SnapshotRepository,
    VolumeTag,
    archive_name,
    format_timestamp,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Outcome of one backup run.

    Attributes:
        timestamp: Shared timestamp of the run
        archives: Created archive per volume tag
        warnings: Non-fatal policy failures
        pruned: Archives removed by retention
    """

    timestamp: str
    archives: Dict[VolumeTag, SnapshotArchive] = field(default_factory=dict)
    warnings: List[PolicyWarning] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)

    @property
    def archive_names(self) -> List[str]:
        return [archive.name for archive in self.archives.values()]


class BackupExecutor:
    """Creates timestamped archives of every volume and applies retention.

    Attributes:
        repository: SnapshotRepository to write to
        retention: Retention tiers applied after each run
        compression: Compression override (None = repository default)

    Example:
        >>> executor = BackupExecutor(repo, RetentionPolicy(keep_daily=7))
        >>> result = await executor.backup(volume_specs_from_config(config.volumes))
        >>> result.archive_names
        ['db_volume_20240101_020000', 'app_volume_20240101_020000']
    """

    def __init__(
        self,
        repository: SnapshotRepository,
        retention: Optional[RetentionPolicy] = None,
        compression: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the executor.

        Args:
            repository: SnapshotRepository instance
            retention: Retention tiers (None disables pruning)
            compression: Compression override
            clock: Source of the run timestamp
        """
        self.repository = repository
        self.retention = retention or RetentionPolicy()
        self.compression = compression
        self._clock = clock

    async def backup(self, volumes: Sequence[VolumeSpec]) -> BackupResult:
        """Run one backup.

        Args:
            volumes: Volumes to snapshot

        Returns:
            BackupResult with the created archives and any policy warnings

        Raises:
            ConflictError: If an archive for this timestamp already exists
            PartialFailure: If some archives were created and one failed
            StackkeeperError: If the first create fails
        """
        timestamp = format_timestamp(self._clock())
        result = BackupResult(timestamp=timestamp)
        logger.info(f"Starting backup run {timestamp}", extra={"repository": self.repository.location})

        await self.repository.ensure_initialized()

        async with self.repository.exclusive():
            await self._check_names_free(volumes, timestamp)
            await self._create_archives(volumes, timestamp, result)
            await self._apply_retention(volumes, result)

        await self._log_summary()
        logger.info(
            f"Backup run {timestamp} completed",
            extra={
                "archives": result.archive_names,
                "pruned": result.pruned,
                "warnings": [str(w) for w in result.warnings],
            },
        )
        return result

    async def _check_names_free(self, volumes: Sequence[VolumeSpec], timestamp: str) -> None:
        existing = {a.name for a in await self.repository.list_archives()}
        taken = [
            archive_name(v.tag, timestamp) for v in volumes if archive_name(v.tag, timestamp) in existing
        ]
        if taken:
            raise ConflictError(
                f"Archive(s) {', '.join(taken)} already exist; refusing to overwrite",
                resource=taken[0],
            )

    async def _create_archives(
        self, volumes: Sequence[VolumeSpec], timestamp: str, result: BackupResult
    ) -> None:
        for volume in volumes:
            name = archive_name(volume.tag, timestamp)
            logger.info(f"Creating archive {name} from {volume.path}")
            try:
                archive = await self.repository.create(name, volume.path, self.compression)
            except StackkeeperError as e:
                if not result.archives:
                    logger.error(f"Backup of {volume.name} volume failed: {e.message}")
                    raise
                succeeded = result.archive_names
                raise PartialFailure(
                    f"Backup incomplete: created {', '.join(succeeded)} but "
                    f"{volume.name} volume failed: {e.message}",
                    succeeded=succeeded,
                    failed={volume.name: e.message},
                ) from e
            result.archives[volume.tag] = archive

    async def _apply_retention(self, volumes: Sequence[VolumeSpec], result: BackupResult) -> None:
        tiers = self.retention.tiers
        if not tiers:
            logger.info("No retention tiers configured, skipping prune")
            return

        for volume in volumes:
            prefix = volume.tag.prefix
            try:
                pruned = await self.repository.prune(
                    prefix=prefix,
                    keep_daily=tiers.get("daily"),
                    keep_weekly=tiers.get("weekly"),
                    keep_monthly=tiers.get("monthly"),
                )
            except StackkeeperError as e:
                self._warn(result, f"pruning {prefix}* failed: {e.message}", "prune")
                continue
            result.pruned.extend(pruned)

        try:
            await self.repository.compact()
        except StackkeeperError as e:
            self._warn(result, f"compaction failed: {e.message}", "compact")

    def _warn(self, result: BackupResult, message: str, operation: str) -> None:
        warning = PolicyWarning(message, operation=operation)
        result.warnings.append(warning)
        logger.warning(message, extra={"operation": operation})

    async def _log_summary(self) -> None:
        """Log repository statistics and the archive list, best-effort."""
        try:
            info = await self.repository.info()
            archives = await self.repository.list_archives()
        except StackkeeperError as e:
            logger.warning(f"Could not read repository summary: {e.message}")
            return
        logger.info(f"Repository info:\n{info.rstrip()}")
        logger.info(
            f"Repository holds {len(archives)} archive(s)",
            extra={"archives": [a.name for a in archives]},
        )
