"""
Cross-process repository lock.

At most one mutating operation (init, create, prune, compact, extract)
proceeds per repository at a time. Overlapping runs - a scheduled backup
and a manual one, or a backup and a restore - serialize on an exclusive
flock() held on a lock file next to the repository.

Invariants:
    - Acquisition waits at most timeout_seconds, then raises LockTimeoutError
    - The lock is released on every exit path, including failures
    - Re-entrant within one RepositoryLock instance (depth counted)
    - The holder's PID is written into the lock file for operators

How to change safely:
    - flock() locks belong to the open file description: never open the
      lock file twice inside one holder or it will wait on itself
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from ..errors import LockTimeoutError

logger = logging.getLogger(__name__)


class RepositoryLock:
    """Exclusive, re-entrant, bounded-wait file lock.

    Attributes:
        path: Lock file path
        timeout_seconds: Maximum time to wait for the lock
        poll_interval: Delay between acquisition attempts

    Example:
        >>> lock = RepositoryLock("/backup/repos/backup-repo.lock", timeout_seconds=300)
        >>> async with lock:
        ...     await run_borg_create()
    """

    def __init__(self, path: str, timeout_seconds: float, poll_interval: float = 0.5) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None
        self._depth = 0

    @property
    def held(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._depth > 0

    async def acquire(self) -> None:
        """Acquire the lock, waiting up to timeout_seconds.

        Raises:
            LockTimeoutError: If another process holds the lock past the timeout
        """
        if self._depth:
            self._depth += 1
            return

        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + self.timeout_seconds
        waited = False

        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Repository lock {self.path} not acquired within "
                            f"{self.timeout_seconds}s (held by {self._read_holder()})",
                            lock_path=self.path,
                        )
                    if not waited:
                        logger.info(f"Waiting for repository lock {self.path}")
                        waited = True
                    await asyncio.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        self._fd = fd
        self._depth = 1
        logger.debug(f"Repository lock acquired: {self.path}")

    def release(self) -> None:
        """Release one level of the lock; unlocks when the depth reaches zero."""
        if not self._depth:
            return
        self._depth -= 1
        if self._depth:
            return

        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Repository lock released: {self.path}")

    def _read_holder(self) -> str:
        try:
            holder = Path(self.path).read_text(encoding="ascii").strip()
        except OSError:
            return "unknown process"
        return f"pid {holder}" if holder else "unknown process"

    async def __aenter__(self) -> RepositoryLock:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.release()
