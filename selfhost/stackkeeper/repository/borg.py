"""
Borg repository client for Stackkeeper.

BorgRepository drives the `borg` command line through asyncio
subprocesses. It is the production SnapshotRepository backend: borg
provides content-addressed deduplication, encryption and retention
pruning; this client only issues commands and classifies failures.

Command mapping:
    init     -> borg init --encryption=<mode> <repo>
    create   -> borg create --stats --compression <c> <repo>::<name> .   (cwd=source)
    list     -> borg list --json <repo>
    extract  -> borg extract <repo>::<name>                               (cwd=target)
    prune    -> borg prune --list --glob-archives '<prefix>*' --keep-... <repo>
    compact  -> borg compact <repo>
    info     -> borg info <repo>

Archives are created from inside the volume (`.`), so their paths are
relative and extract reproduces the tree under any target directory.

Invariants:
    - The passphrase travels in BORG_PASSPHRASE, never in argv
    - Mutating commands run under the RepositoryLock and borg's --lock-wait
    - Exit status 1 (borg warning) is logged, not raised
    - Exit status >= 2 is classified into the error taxonomy

How to change safely:
    - Check new flags against borg 1.2 and 1.4 (--prefix was removed in favour
      of --glob-archives)
    - Keep stderr classification patterns in _classify() covered by tests
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..errors import (
    ConfigurationError,
    ConflictError,
    ConnectivityError,
    LockTimeoutError,
    RepositoryError,
    RepositoryNotFoundError,
)
from .base import SnapshotArchive, retry_with_backoff
from .lock import RepositoryLock

logger = logging.getLogger(__name__)

_PRUNED_RE = re.compile(r"Pruning archive(?: \(\d+/\d+\))?:\s+(\S+)")

_NOT_FOUND_MARKERS = ("does not exist", "is not a valid repository")
_LOCK_MARKERS = ("Failed to create/acquire the lock", "LockTimeout")
_CONFLICT_MARKERS = ("already exists",)
_PASSPHRASE_MARKERS = ("passphrase supplied", "passphrase is incorrect", "PassphraseWrong")
_CONNECTIVITY_MARKERS = (
    "Connection closed by remote host",
    "Connection refused",
    "Connection timed out",
    "Could not resolve hostname",
    "No route to host",
)


@dataclass
class CommandResult:
    """Outcome of one borg invocation."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str


class BorgRepository:
    """SnapshotRepository backed by the borg CLI.

    Attributes:
        config: RepositoryConfig instance

    Example:
        >>> repo = BorgRepository(RepositoryConfig.from_env())
        >>> await repo.ensure_initialized()
        >>> await repo.create("db_volume_20240101_020000", "/check_db_data")
    """

    def __init__(self, config: Any) -> None:
        """Initialize the client.

        Args:
            config: RepositoryConfig instance
        """
        self.config = config
        self._lock = RepositoryLock(config.lock_path, config.lock_timeout_seconds)

    @property
    def location(self) -> str:
        return self.config.path

    def exclusive(self) -> AbstractAsyncContextManager[Any]:
        return self._lock

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.config.passphrase:
            env["BORG_PASSPHRASE"] = self.config.passphrase
        # Never block on interactive prompts inside a container
        env.setdefault("BORG_RELOCATED_REPO_ACCESS_IS_OK", "no")
        env.setdefault("BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK", "no")
        return env

    def _archive_ref(self, name: str) -> str:
        return f"{self.config.path}::{name}"

    async def _run(self, args: Sequence[str], cwd: Optional[str] = None) -> CommandResult:
        """Run borg with args and capture its output.

        Raises:
            ConfigurationError: If the borg binary is not installed
        """
        argv = [self.config.borg_bin, *args]
        logger.debug("Running borg", extra={"argv": argv, "cwd": cwd})
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ConfigurationError(
                f"Required binary not found: {self.config.borg_bin}", setting="BORG_BIN"
            )

        stdout, stderr = await process.communicate()
        return CommandResult(
            args=argv,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def _classify(self, result: CommandResult, operation: str) -> Exception:
        """Map a failed borg invocation onto the error taxonomy."""
        stderr = result.stderr.strip()
        summary = stderr.splitlines()[-1] if stderr else f"exit status {result.returncode}"
        message = f"borg {operation} failed: {summary}"

        if any(marker in stderr for marker in _LOCK_MARKERS):
            return LockTimeoutError(message, lock_path=self.config.path)
        if any(marker in stderr for marker in _PASSPHRASE_MARKERS):
            return ConfigurationError(message, setting="BORG_PASSPHRASE")
        if any(marker in stderr for marker in _CONNECTIVITY_MARKERS):
            return ConnectivityError(message, target=self.config.path)
        if operation == "create" and any(marker in stderr for marker in _CONFLICT_MARKERS):
            return ConflictError(message, resource=self.config.path)
        if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
            return RepositoryNotFoundError(
                message, operation=operation, returncode=result.returncode, stderr=stderr
            )
        return RepositoryError(
            message, operation=operation, returncode=result.returncode, stderr=stderr
        )

    async def _borg(
        self,
        operation: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        retry: bool = True,
    ) -> CommandResult:
        """Run a borg subcommand, retrying connectivity failures when allowed."""

        async def attempt() -> CommandResult:
            result = await self._run([operation, *args], cwd=cwd)
            if result.returncode == 0:
                return result
            if result.returncode == 1:
                logger.warning(
                    f"borg {operation} completed with warnings",
                    extra={"stderr": result.stderr.strip()[-2000:]},
                )
                return result
            raise self._classify(result, operation)

        if not retry:
            return await attempt()
        return await retry_with_backoff(
            attempt,
            timeout_seconds=self.config.retry_timeout_seconds,
            description=f"borg {operation}",
        )

    def _lock_wait_args(self) -> List[str]:
        return ["--lock-wait", str(self.config.lock_timeout_seconds)]

    # ------------------------------------------------------------------
    # SnapshotRepository
    # ------------------------------------------------------------------

    async def exists(self) -> bool:
        try:
            await self._borg("info", [*self._lock_wait_args(), self.config.path])
        except RepositoryNotFoundError:
            return False
        return True

    async def init(self, encryption: str) -> None:
        if not self.config.is_remote:
            Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            await self._borg("init", [f"--encryption={encryption}", self.config.path])
        logger.info(
            "Repository initialized",
            extra={"repository": self.config.path, "encryption": encryption},
        )

    async def ensure_initialized(self) -> bool:
        if await self.exists():
            logger.info(f"Repository already exists at {self.config.path}")
            return False
        logger.info(f"Initializing repository at {self.config.path}")
        await self.init(self.config.encryption)
        return True

    async def create(
        self, name: str, source: str, compression: Optional[str] = None
    ) -> SnapshotArchive:
        archive = SnapshotArchive.parse(name, created_at=datetime.now())
        if archive is None:
            raise ValueError(f"Archive name does not follow <tag>_volume_<timestamp>: {name}")
        if not Path(source).is_dir():
            raise RepositoryError(
                f"Cannot snapshot {source}: not a directory", operation="create"
            )

        async with self._lock:
            existing = {a.name for a in await self.list_archives()}
            if name in existing:
                raise ConflictError(f"Archive {name} already exists", resource=name)

            await self._borg(
                "create",
                [
                    *self._lock_wait_args(),
                    "--stats",
                    "--compression",
                    compression or self.config.compression,
                    self._archive_ref(name),
                    ".",
                ],
                cwd=source,
                retry=False,
            )

        logger.info("Archive created", extra={"archive": name, "source": source})
        return archive

    async def list_archives(self) -> List[SnapshotArchive]:
        result = await self._borg("list", [*self._lock_wait_args(), "--json", self.config.path])
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise RepositoryError(f"Unparsable borg list output: {e}", operation="list")

        archives = []
        for entry in payload.get("archives", []):
            name = entry.get("name") or entry.get("archive", "")
            created_at = None
            stamp = entry.get("time") or entry.get("start")
            if stamp:
                try:
                    created_at = datetime.fromisoformat(stamp)
                except ValueError:
                    created_at = None
            archive = SnapshotArchive.parse(name, created_at=created_at)
            if archive is not None:
                archives.append(archive)

        return sorted(archives, key=lambda a: a.name)

    async def extract(self, name: str, target: str) -> None:
        Path(target).mkdir(parents=True, exist_ok=True)
        async with self._lock:
            await self._borg(
                "extract",
                [*self._lock_wait_args(), self._archive_ref(name)],
                cwd=target,
                retry=False,
            )
        logger.info("Archive extracted", extra={"archive": name, "target": target})

    async def prune(
        self,
        prefix: Optional[str] = None,
        keep_daily: Optional[int] = None,
        keep_weekly: Optional[int] = None,
        keep_monthly: Optional[int] = None,
    ) -> List[str]:
        keep_args = []
        for flag, value in (
            ("--keep-daily", keep_daily),
            ("--keep-weekly", keep_weekly),
            ("--keep-monthly", keep_monthly),
        ):
            if value is not None and value > 0:
                keep_args.append(f"{flag}={value}")
        if not keep_args:
            return []

        args = [*self._lock_wait_args(), "--list"]
        if prefix:
            args += ["--glob-archives", f"{prefix}*"]
        args += [*keep_args, self.config.path]

        async with self._lock:
            result = await self._borg("prune", args)

        pruned = _PRUNED_RE.findall(result.stderr + "\n" + result.stdout)
        logger.info(
            "Prune completed",
            extra={"prefix": prefix, "rules": keep_args, "pruned": pruned},
        )
        return pruned

    async def compact(self) -> None:
        async with self._lock:
            await self._borg("compact", [*self._lock_wait_args(), self.config.path])

    async def info(self) -> str:
        result = await self._borg("info", [*self._lock_wait_args(), self.config.path])
        return result.stdout
