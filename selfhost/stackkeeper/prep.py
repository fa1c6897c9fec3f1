"""
Startup prep pipeline.

One run on stack startup, before the database and application start:

    detect volumes -> decide -> BACKUP:  snapshot both volumes
                             -> RESTORE: restore the empty volume(s)
                             -> NOOP:    nothing (automation disabled)

The decision is passed in memory from detector to engine to executor;
the optional status record only informs other processes (seed runner).

Invariants:
    - Exactly one decision per run
    - Restore never targets a populated volume
    - "Nothing to restore" completes successfully (fresh deploy)
    - A partial restore is raised as PartialFailure after the status
      record is written
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .config import KeeperConfig, RetentionPolicy
from .decision.detector import VolumeSpec, VolumeState, detect_volumes, volume_specs_from_config
from .decision.engine import DeploymentAction, DeploymentDecision, decide_for, disabled_decision
from .decision.status import PrepStatus, write_status
from .errors import PartialFailure, StackkeeperError
from .repository.base import SnapshotRepository
from .snapshot.backup import BackupExecutor, BackupResult
from .snapshot.restore import RestoreExecutor, RestoreResult, RestoreStatus

logger = logging.getLogger(__name__)


@dataclass
class PrepResult:
    """Outcome of one prep run."""

    decision: DeploymentDecision
    states: List[VolumeState]
    backup: Optional[BackupResult] = None
    restore: Optional[RestoreResult] = None

    @property
    def outcome(self) -> str:
        if self.backup is not None:
            return f"backed up {', '.join(self.backup.archive_names)}"
        if self.restore is not None:
            return self.restore.message
        return "no action"


class PrepPipeline:
    """Runs detect, decide and dispatch once.

    Example:
        >>> pipeline = PrepPipeline.from_config(config, create_repository(config.repository))
        >>> result = await pipeline.run()
        >>> result.decision.action
        <DeploymentAction.RESTORE: 'restore'>
    """

    def __init__(
        self,
        repository: SnapshotRepository,
        volumes: Sequence[VolumeSpec],
        retention: Optional[RetentionPolicy] = None,
        enabled: bool = True,
        status_file: Optional[str] = None,
        require_matching_timestamps: bool = False,
        compression: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.repository = repository
        self.volumes = list(volumes)
        self.enabled = enabled
        self.status_file = status_file
        self.backup_executor = BackupExecutor(repository, retention, compression=compression, clock=clock)
        self.restore_executor = RestoreExecutor(
            repository, require_matching_timestamps=require_matching_timestamps
        )

    @classmethod
    def from_config(cls, config: KeeperConfig, repository: SnapshotRepository) -> PrepPipeline:
        return cls(
            repository=repository,
            volumes=volume_specs_from_config(config.volumes),
            retention=config.retention,
            enabled=config.prep.enabled,
            status_file=config.prep.status_file,
            require_matching_timestamps=config.prep.require_matching_timestamps,
        )

    async def run(self) -> PrepResult:
        """Run the pipeline once.

        Raises:
            PartialFailure: If a restore or backup completed only partially
            StackkeeperError: If the dispatched action failed
        """
        states = detect_volumes(self.volumes)
        decision = decide_for(states) if self.enabled else disabled_decision()
        logger.info(
            f"Decision: {decision.action.value.upper()} ({decision.reason})",
            extra={"action": decision.action.value},
        )
        result = PrepResult(decision=decision, states=states)

        try:
            await self._dispatch(result)
        except StackkeeperError as e:
            self._record(result, f"failed: {e.message}")
            raise
        self._record(result, result.outcome)

        if result.restore is not None and result.restore.status is RestoreStatus.PARTIAL:
            raise PartialFailure(
                result.restore.message,
                succeeded=list(result.restore.restored.values()),
                failed={tag.value: msg for tag, msg in result.restore.failures.items()},
            )
        return result

    async def _dispatch(self, result: PrepResult) -> None:
        action = result.decision.action
        if action is DeploymentAction.BACKUP:
            result.backup = await self.backup_executor.backup(self.volumes)
        elif action is DeploymentAction.RESTORE:
            empty = {state.tag for state in result.states if not state.has_data}
            targets = [spec for spec in self.volumes if spec.tag in empty]
            result.restore = await self.restore_executor.restore(targets)
        else:
            logger.info("Volume automation disabled, leaving volumes untouched")

    def _record(self, result: PrepResult, outcome: str) -> None:
        if not self.status_file:
            return
        write_status(PrepStatus.from_run(result.decision, result.states, outcome), self.status_file)
