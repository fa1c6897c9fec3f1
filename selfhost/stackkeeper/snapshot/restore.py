"""
Restore executor.

Restores the latest archive of each requested volume tag:

    1. list archives, group by tag
    2. pick the lexically greatest name per tag (latest, since timestamps
       are zero-padded)
    3. if every requested tag has an archive, extract each into its volume

Pairing is latest-of-each by default, tolerating asymmetric backup
cadence. With require_matching_timestamps the newest timestamp present
for every requested tag is used instead.

Invariants:
    - Missing archives are not an error: the result is SKIPPED and the
      deployment proceeds fresh
    - Nothing is extracted unless every requested tag has an archive
    - A volume restored before another failed is not rolled back; the
      result is PARTIAL
    - Extraction holds the repository lock for the whole restore

How to change safely:
    - Callers pass only the volumes that need restoring; never pass a
      populated volume from automated paths
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from ..decision.detector import VolumeSpec, VolumeState
from ..errors import StackkeeperError
from ..repository.base import SnapshotArchive, SnapshotRepository, VolumeTag

logger = logging.getLogger(__name__)

NO_SNAPSHOTS_MESSAGE = "no snapshots found, proceeding fresh"

RestoreTarget = Union[VolumeSpec, VolumeState]


class RestoreStatus(Enum):
    RESTORED = "restored"
    SKIPPED = "skipped"
    PARTIAL = "partial"


@dataclass
class RestoreResult:
    """Outcome of one restore.

    Attributes:
        status: RESTORED, SKIPPED or PARTIAL
        restored: Extracted archive name per volume tag
        failures: Failure message per volume tag
        message: Operator-facing summary
    """

    status: RestoreStatus
    restored: Dict[VolumeTag, str] = field(default_factory=dict)
    failures: Dict[VolumeTag, str] = field(default_factory=dict)
    message: str = ""


def latest_by_tag(archives: Sequence[SnapshotArchive]) -> Dict[VolumeTag, SnapshotArchive]:
    """Lexically greatest archive per tag."""
    latest: Dict[VolumeTag, SnapshotArchive] = {}
    for archive in archives:
        current = latest.get(archive.tag)
        if current is None or archive.name > current.name:
            latest[archive.tag] = archive
    return latest


def latest_matching(
    archives: Sequence[SnapshotArchive], tags: Sequence[VolumeTag]
) -> Dict[VolumeTag, SnapshotArchive]:
    """Archives of the newest timestamp present for every tag, or {}."""
    by_tag: Dict[VolumeTag, Dict[str, SnapshotArchive]] = {tag: {} for tag in tags}
    for archive in archives:
        if archive.tag in by_tag:
            by_tag[archive.tag][archive.timestamp] = archive
    common = set.intersection(*(set(group) for group in by_tag.values())) if by_tag else set()
    if not common:
        return {}
    newest = max(common)
    return {tag: by_tag[tag][newest] for tag in tags}


class RestoreExecutor:
    """Extracts the latest archives into empty volumes.

    Example:
        >>> executor = RestoreExecutor(repo)
        >>> result = await executor.restore([db_state, app_state])
        >>> result.status
        <RestoreStatus.RESTORED: 'restored'>
    """

    def __init__(
        self, repository: SnapshotRepository, require_matching_timestamps: bool = False
    ) -> None:
        self.repository = repository
        self.require_matching_timestamps = require_matching_timestamps

    async def restore(self, targets: Sequence[RestoreTarget]) -> RestoreResult:
        """Restore the given volumes from their latest archives.

        Args:
            targets: Volumes that need restoring

        Returns:
            RestoreResult; SKIPPED when the repository has nothing to offer

        Raises:
            StackkeeperError: If listing fails, or every extraction failed
        """
        if not targets:
            return RestoreResult(RestoreStatus.SKIPPED, message="no volume needs restoring")

        if not await self.repository.exists():
            logger.info(f"Repository {self.repository.location} not initialized: {NO_SNAPSHOTS_MESSAGE}")
            return RestoreResult(RestoreStatus.SKIPPED, message=NO_SNAPSHOTS_MESSAGE)

        archives = await self.repository.list_archives()
        chosen = self._choose(archives, [t.tag for t in targets])
        missing = [t.name for t in targets if t.tag not in chosen]
        if missing:
            logger.info(
                f"No archive for {', '.join(missing)} volume(s): {NO_SNAPSHOTS_MESSAGE}",
                extra={"available": [a.name for a in archives]},
            )
            return RestoreResult(RestoreStatus.SKIPPED, message=NO_SNAPSHOTS_MESSAGE)

        return await self._extract_all(targets, chosen)

    def _choose(
        self, archives: Sequence[SnapshotArchive], tags: List[VolumeTag]
    ) -> Dict[VolumeTag, SnapshotArchive]:
        if self.require_matching_timestamps and len(tags) > 1:
            return latest_matching(archives, tags)
        latest = latest_by_tag(archives)
        return {tag: latest[tag] for tag in tags if tag in latest}

    async def _extract_all(
        self, targets: Sequence[RestoreTarget], chosen: Dict[VolumeTag, SnapshotArchive]
    ) -> RestoreResult:
        result = RestoreResult(RestoreStatus.RESTORED)
        first_error: Optional[StackkeeperError] = None

        async with self.repository.exclusive():
            for target in targets:
                archive = chosen[target.tag]
                logger.info(f"Restoring {target.name} volume from {archive.name} into {target.path}")
                try:
                    await self.repository.extract(archive.name, target.path)
                except StackkeeperError as e:
                    logger.error(f"Restore of {target.name} volume from {archive.name} failed: {e.message}")
                    result.failures[target.tag] = e.message
                    first_error = first_error or e
                    continue
                result.restored[target.tag] = archive.name

        if first_error is not None and not result.restored:
            raise first_error
        if result.failures:
            result.status = RestoreStatus.PARTIAL
            result.message = (
                f"partial restore: restored {', '.join(result.restored.values())}, "
                f"failed {', '.join(tag.value for tag in result.failures)}"
            )
        else:
            result.message = f"restored {', '.join(result.restored.values())}"
        logger.info(f"Restore finished: {result.message}")
        return result
