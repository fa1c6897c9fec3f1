"""
Backup and restore of the monitored volumes.

- BackupExecutor: timestamped archive per volume, then retention
- RestoreExecutor: latest archive per volume back into empty volumes
- BackupScheduler: periodic backups for the sidecar container
"""

from .backup import BackupExecutor, BackupResult
from .restore import (
    NO_SNAPSHOTS_MESSAGE,
    RestoreExecutor,
    RestoreResult,
    RestoreStatus,
    latest_by_tag,
    latest_matching,
)
from .scheduler import BackupScheduler

__all__ = [
    "BackupExecutor",
    "BackupResult",
    "NO_SNAPSHOTS_MESSAGE",
    "RestoreExecutor",
    "RestoreResult",
    "RestoreStatus",
    "latest_by_tag",
    "latest_matching",
    "BackupScheduler",
]
