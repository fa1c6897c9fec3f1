"""
Database access for seed import and export.

The seed runner never speaks the database protocol itself: it drives the
MariaDB command line client (`mariadb`, `mariadb-dump`) and streams data
through their stdin/stdout.

Invariants:
    - The password travels in MYSQL_PWD, never in argv
    - Import streams: the seed is never materialized in a temp file
    - Dumps use --single-transaction for a consistent snapshot
    - A failed client process is always reported with its stderr

How to change safely:
    - Keep SeedDatabase minimal; the in-memory backend implements it too
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import abstractmethod
from typing import Any, BinaryIO, Dict, Iterable, List, Protocol, runtime_checkable

from ..errors import ConfigurationError, ConnectivityError, SeedExportError, SeedImportError

logger = logging.getLogger(__name__)

DUMP_FLAGS = ("--single-transaction", "--routines", "--triggers", "--events")

_CHUNK_SIZE = 64 * 1024


@runtime_checkable
class SeedDatabase(Protocol):
    """Protocol for the database the seed runner works against."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable host/database label."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the database accepts authenticated queries."""
        ...

    @abstractmethod
    async def table_count(self) -> int:
        """Number of tables in the target database.

        Raises:
            ConnectivityError: If the database cannot be queried
        """
        ...

    @abstractmethod
    async def import_stream(self, chunks: Iterable[bytes]) -> None:
        """Execute an SQL byte stream against the target database.

        Raises:
            SeedImportError: If the client rejects the stream
        """
        ...

    @abstractmethod
    async def dump(self, out: BinaryIO) -> None:
        """Write a consistent SQL dump of the target database to out.

        Raises:
            SeedExportError: If the dump fails
        """
        ...


class MariaDbClient:
    """SeedDatabase driving the mariadb / mariadb-dump CLIs.

    Attributes:
        config: DatabaseConfig instance

    Example:
        >>> db = MariaDbClient(DatabaseConfig.from_env())
        >>> await db.ping()
        True
        >>> await db.table_count()
        12
    """

    def __init__(self, config: Any) -> None:
        self.config = config

    @property
    def location(self) -> str:
        return f"{self.config.host}/{self.config.database}"

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["MYSQL_PWD"] = self.config.password or ""
        return env

    def _client_args(self, *extra: str) -> List[str]:
        return [
            self.config.client_bin,
            *self.config.client_opts,
            "-h",
            self.config.host,
            "-u",
            self.config.user,
            *extra,
        ]

    def _dump_args(self) -> List[str]:
        return [
            self.config.dump_bin,
            *self.config.dump_opts,
            "-h",
            self.config.host,
            "-u",
            self.config.user,
            *DUMP_FLAGS,
            self.config.database,
        ]

    async def _spawn(self, argv: List[str], **kwargs: Any) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*argv, env=self._env(), **kwargs)
        except FileNotFoundError:
            raise ConfigurationError(f"Required binary not found: {argv[0]}")

    async def _query(self, sql: str) -> tuple[int, str, str]:
        process = await self._spawn(
            self._client_args("-N", "-B", "-e", sql),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def ping(self) -> bool:
        returncode, _, stderr = await self._query("SELECT 1;")
        if returncode != 0:
            logger.debug("Database not ready", extra={"stderr": stderr.strip()})
        return returncode == 0

    async def table_count(self) -> int:
        schema = self.config.database.replace("'", "''")
        returncode, stdout, stderr = await self._query(
            f"SELECT COUNT(*) FROM information_schema.tables WHERE table_schema='{schema}';"
        )
        if returncode != 0:
            raise ConnectivityError(
                f"Cannot count tables of {self.location}: {stderr.strip()}",
                target=self.location,
            )
        try:
            return int(stdout.strip().splitlines()[-1])
        except (IndexError, ValueError):
            raise ConnectivityError(
                f"Unexpected table count output from {self.location}: {stdout!r}",
                target=self.location,
            )

    async def import_stream(self, chunks: Iterable[bytes]) -> None:
        process = await self._spawn(
            self._client_args(self.config.database),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        assert process.stdin is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        written = 0
        broken_pipe = False

        try:
            for chunk in chunks:
                process.stdin.write(chunk)
                await process.stdin.drain()
                written += len(chunk)
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Client exited before reading the whole stream
            broken_pipe = True
        except BaseException:
            process.kill()
            await process.wait()
            stderr_task.cancel()
            raise

        returncode = await process.wait()
        stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        if returncode != 0 or broken_pipe:
            raise SeedImportError(
                f"Import into {self.location} failed (exit {returncode}): {stderr or 'stream not consumed'}"
            )
        logger.debug("Import stream finished", extra={"bytes": written})

    async def dump(self, out: BinaryIO) -> None:
        process = await self._spawn(
            self._dump_args(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())

        try:
            while True:
                chunk = await process.stdout.read(_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
        except BaseException:
            process.kill()
            await process.wait()
            stderr_task.cancel()
            raise

        returncode = await process.wait()
        stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        if returncode != 0:
            raise SeedExportError(f"Dump of {self.location} failed (exit {returncode}): {stderr}")


def create_database(config: Any) -> SeedDatabase:
    """Factory function to create the database client from configuration."""
    return MariaDbClient(config)
