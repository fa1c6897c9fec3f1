"""
Periodic backup scheduler.

Runs the backup executor every interval_seconds inside one long-lived
process (the backup sidecar container). A failed cycle is logged and the
loop continues; the next cycle gets a fresh timestamp.

Invariants:
    - Cycles never overlap: the next sleep starts after a cycle finishes
    - stop() interrupts the sleep without waiting for the interval
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from ..decision.detector import VolumeSpec
from ..errors import StackkeeperError
from .backup import BackupExecutor, BackupResult

logger = logging.getLogger(__name__)

AfterBackupHook = Callable[[BackupResult], Awaitable[None]]


class BackupScheduler:
    """Runs backups on a fixed interval.

    Attributes:
        executor: BackupExecutor used for each cycle
        volumes: Volumes to back up
        interval_seconds: Delay between cycles
        run_initial_backup: Run a cycle immediately at start

    Example:
        >>> scheduler = BackupScheduler(executor, specs, interval_seconds=86400)
        >>> await scheduler.start()  # Runs until stopped
    """

    def __init__(
        self,
        executor: BackupExecutor,
        volumes: Sequence[VolumeSpec],
        interval_seconds: float = 86400,
        run_initial_backup: bool = False,
        after_backup: Optional[AfterBackupHook] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            executor: BackupExecutor instance
            volumes: Volumes to back up
            interval_seconds: Interval between cycles
            run_initial_backup: Run one cycle before the first sleep
            after_backup: Awaited after each successful cycle (seed export)
        """
        self.executor = executor
        self.volumes = list(volumes)
        self.interval_seconds = interval_seconds
        self.run_initial_backup = run_initial_backup
        self.after_backup = after_backup

        self._running = False
        self._stop_event = asyncio.Event()
        self.cycles = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            "Starting backup scheduler",
            extra={
                "interval_seconds": self.interval_seconds,
                "run_initial_backup": self.run_initial_backup,
            },
        )

        try:
            if self.run_initial_backup:
                await self.run_cycle()
            while self._running:
                if await self._sleep():
                    break
                await self.run_cycle()
        except asyncio.CancelledError:
            logger.info("Backup scheduler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping backup scheduler")

    async def _sleep(self) -> bool:
        """Wait for the next cycle; True if stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_cycle(self) -> Optional[BackupResult]:
        """Run one backup cycle, logging instead of raising failures."""
        self.cycles += 1
        try:
            result = await self.executor.backup(self.volumes)
        except StackkeeperError as e:
            self.failures += 1
            logger.error(f"Scheduled backup failed: {e.message}", extra={"code": e.code})
            return None
        except Exception as e:
            self.failures += 1
            logger.error(f"Scheduled backup error: {e}", exc_info=True)
            return None

        if self.after_backup is not None:
            try:
                await self.after_backup(result)
            except StackkeeperError as e:
                logger.error(f"Post-backup step failed: {e.message}", extra={"code": e.code})
            except Exception as e:
                logger.error(f"Post-backup step error: {e}", exc_info=True)
        return result
