"""
Seed runner: database bootstrap from SQL dumps.

Modes:
    prep    write INIT_DIR/seed.sql (or a no-seed notice script) for the
            database container's init directory, then touch .ready
    import  import the resolved seed into the (empty) database
    export  dump the database into the canonical seed slot
    auto    decide between the above from the status record, seed
            availability and database emptiness:

                status record: DB volume had data  -> skip
                no seed  + empty DB                -> clean start
                seed     + empty DB                -> import
                DB has data                        -> nothing to do

Invariants:
    - Import only runs against a database with zero tables (ConflictError)
    - Import is one transaction stream; gzip seeds are decompressed on the fly
    - Export replaces the canonical slot atomically (tmp + os.replace) and
      leaves exactly one canonical seed file behind
    - A failed export leaves the previous canonical seed untouched

How to change safely:
    - The emptiness check must stay independent of the prep decision:
      they run in different processes at different times
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import logging
import os
import shutil
import time
import zlib
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from ..config import SeedConfig, SeedMode
from ..decision.status import read_status
from ..errors import (
    ConfigurationError,
    ConflictError,
    ConnectivityError,
    SeedExportError,
    SeedImportError,
)
from ..repository.base import VolumeTag, format_timestamp
from .database import SeedDatabase
from .selector import (
    GZ_SUFFIX,
    SelectedSeed,
    SeedCandidate,
    discover_candidates,
    log_candidates,
    select_seed,
)

logger = logging.getLogger(__name__)

TRANSACTION_BEGIN = b"SET autocommit=0;\n"
TRANSACTION_END = b"\nCOMMIT;\n"

NO_SEED_SCRIPT = """#!/usr/bin/env sh
echo "MariaDB init: no seed found in {seed_dir}. Starting with a clean DB."
"""

_CHUNK_SIZE = 64 * 1024


class SeedOutcome(Enum):
    IMPORTED = "imported"
    EXPORTED = "exported"
    PREPARED = "prepared"
    CLEAN_START = "clean_start"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SeedRunResult:
    """Outcome of one seed runner invocation."""

    outcome: SeedOutcome
    message: str
    path: Optional[str] = None


def _sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _open_seed(path: str, compressed: bool):
    return gzip.open(path, "rb") if compressed else open(path, "rb")


class SeedRunner:
    """Imports, exports and prepares database seeds.

    Attributes:
        config: SeedConfig instance
        database: SeedDatabase to import into / dump from (None for prep)
        wait_timeout_seconds: Bounded wait for database readiness
        wait_interval_seconds: Delay between readiness probes
        status_file: Optional prep status record consulted by auto mode

    Example:
        >>> runner = SeedRunner(config.seed, MariaDbClient(config.database))
        >>> result = await runner.run()
        >>> result.outcome
        <SeedOutcome.CLEAN_START: 'clean_start'>
    """

    def __init__(
        self,
        config: SeedConfig,
        database: Optional[SeedDatabase],
        wait_timeout_seconds: float = 120,
        wait_interval_seconds: float = 3,
        status_file: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self._database = database
        self.wait_timeout_seconds = wait_timeout_seconds
        self.wait_interval_seconds = wait_interval_seconds
        self.status_file = status_file
        self._clock = clock

    @property
    def database(self) -> SeedDatabase:
        """The target database; prep mode runs without one."""
        if self._database is None:
            raise ConfigurationError("No database configured for this seed mode")
        return self._database

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    async def wait_for_db(self) -> None:
        """Poll the database until it answers or the wait budget is spent.

        Raises:
            ConnectivityError: If the database is not ready in time
        """
        logger.info(
            f"Waiting for database @ {self.database.location} "
            f"(timeout: {self.wait_timeout_seconds}s)"
        )
        deadline = time.monotonic() + self.wait_timeout_seconds
        while not await self.database.ping():
            if time.monotonic() >= deadline:
                raise ConnectivityError(
                    f"Database {self.database.location} not ready after "
                    f"{self.wait_timeout_seconds}s",
                    target=self.database.location,
                )
            logger.debug("Database not ready yet")
            await asyncio.sleep(self.wait_interval_seconds)
        logger.info("Database is ready")

    def resolve_seed(self) -> Optional[SelectedSeed]:
        """Find the seed to use.

        The canonical slot wins when it holds a non-empty file; otherwise,
        with auto-select enabled, the selector picks among the seed
        directory's dumps. The slot is compressed exactly when SEED_GZIP
        says so, whatever SEED_FILE is called.
        """
        canonical = self.config.canonical_path
        if os.path.isfile(canonical) and os.path.getsize(canonical) > 0:
            candidate = replace(SeedCandidate.from_path(canonical), is_compressed=self.config.gzip)
            return SelectedSeed(candidate, "canonical seed slot")

        if not self.config.auto_select:
            return None

        candidates = discover_candidates(self.config.seed_dir)
        if not candidates:
            logger.info(f"No seed files found in {self.config.seed_dir}")
            return None
        if len(candidates) > 1:
            logger.info("Multiple seed files found:")
            log_candidates(candidates)

        selected = select_seed(candidates)
        if selected is None or selected.candidate.size_bytes == 0:
            logger.info("No usable seed file could be selected")
            return None
        logger.info(f"Auto-selected seed file: {selected.candidate.name} ({selected.reason})")
        return selected

    def _stream(self, seed: SelectedSeed) -> Iterator[bytes]:
        """Yield the seed wrapped in one transaction, decompressing on the fly."""
        yield TRANSACTION_BEGIN
        try:
            with _open_seed(seed.path, seed.candidate.is_compressed) as f:
                for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                    yield chunk
        except (OSError, EOFError, zlib.error) as e:
            raise SeedImportError(f"Cannot read seed {seed.path}: {e}", seed_path=seed.path)
        yield TRANSACTION_END

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def import_seed(self, seed: Optional[SelectedSeed] = None) -> SeedRunResult:
        """Import a seed into the empty target database.

        Raises:
            SeedImportError: If there is no seed, it is empty, or the import fails
            ConflictError: If the database already has tables
            ConnectivityError: If the database is not reachable in time
        """
        seed = seed or self.resolve_seed()
        if seed is None:
            raise SeedImportError(f"No seed file found in {self.config.seed_dir}")
        if not os.path.isfile(seed.path) or os.path.getsize(seed.path) == 0:
            raise SeedImportError(f"Seed file not found or empty: {seed.path}", seed_path=seed.path)

        await self.wait_for_db()
        tables = await self.database.table_count()
        if tables:
            raise ConflictError(
                f"Refusing to import {seed.path}: database {self.database.location} "
                f"already has {tables} table(s)",
                resource=self.database.location,
            )

        logger.info(
            f"Importing {seed.candidate.name} into {self.database.location}",
            extra={"compressed": seed.candidate.is_compressed, "bytes": seed.candidate.size_bytes},
        )
        await self.database.import_stream(self._stream(seed))
        logger.info("Import completed")
        return SeedRunResult(SeedOutcome.IMPORTED, f"imported {seed.path}", path=seed.path)

    async def export_seed(self) -> SeedRunResult:
        """Dump the database into the canonical seed slot.

        Raises:
            SeedExportError: If the dump or the file replacement fails
            ConnectivityError: If the database is not reachable in time
        """
        await self.wait_for_db()

        destination = self.config.canonical_path
        tmp = destination + ".tmp"
        Path(self.config.seed_dir).mkdir(parents=True, exist_ok=True)
        logger.info(f"Exporting {self.database.location} to {destination}", extra={"gzip": self.config.gzip})

        try:
            with (gzip.open(tmp, "wb") if self.config.gzip else open(tmp, "wb")) as out:
                await self.database.dump(out)
            os.replace(tmp, destination)
        except OSError as e:
            raise SeedExportError(f"Cannot write seed {destination}: {e}", destination=destination)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

        try:
            self._write_checksum(destination)
            self._remove_stale_slots()
            if self.config.keep_history:
                self._keep_history_copy(destination)
        except OSError as e:
            raise SeedExportError(
                f"Seed written to {destination} but finishing steps failed: {e}",
                destination=destination,
            )

        logger.info("Export completed", extra={"path": destination})
        return SeedRunResult(SeedOutcome.EXPORTED, f"exported to {destination}", path=destination)

    def _write_checksum(self, path: str) -> None:
        sidecar = path + ".sha256"
        tmp = sidecar + ".tmp"
        try:
            with open(tmp, "w", encoding="ascii") as f:
                f.write(f"{_sha256(path)}  {os.path.basename(path)}\n")
            os.replace(tmp, sidecar)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def _remove_stale_slots(self) -> None:
        """Remove the other-format canonical file so exactly one remains."""
        canonical = self.config.canonical_name
        base = canonical[: -len(".gz")] if canonical.endswith(".gz") else canonical
        for name in (base, base + ".gz"):
            if name == canonical:
                continue
            for stale in (name, name + ".sha256"):
                path = os.path.join(self.config.seed_dir, stale)
                if os.path.lexists(path):
                    os.remove(path)
                    logger.info(f"Removed stale seed file {path}")

    def _keep_history_copy(self, path: str) -> None:
        name = os.path.basename(path)
        suffix = GZ_SUFFIX if name.endswith(GZ_SUFFIX) else os.path.splitext(name)[1]
        stem = name[: -len(suffix)] if suffix else name
        history = os.path.join(
            self.config.seed_dir, f"{stem}_{format_timestamp(self._clock())}{suffix}"
        )
        shutil.copy2(path, history)
        logger.info(f"Kept historical seed copy {history}")

    def prep(self) -> SeedRunResult:
        """Prepare INIT_DIR for the database container. Needs no database."""
        init_dir = Path(self.config.init_dir)
        init_dir.mkdir(parents=True, exist_ok=True)
        for entry in init_dir.iterdir():
            if entry.is_file() or entry.is_symlink():
                entry.unlink()

        logger.info(f"Scanning {self.config.seed_dir} for seed files")
        seed = self.resolve_seed()
        if seed is None:
            script = init_dir / "00-no-seed.sh"
            script.write_text(NO_SEED_SCRIPT.format(seed_dir=self.config.seed_dir), encoding="utf-8")
            script.chmod(0o755)
            (init_dir / ".ready").touch()
            logger.info(f"PREP: no seed found, wrote notice script {script}")
            return SeedRunResult(SeedOutcome.PREPARED, "no seed, clean database", path=str(script))

        target = init_dir / "seed.sql"
        try:
            with _open_seed(seed.path, seed.candidate.is_compressed) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK_SIZE)
        except (OSError, EOFError, zlib.error) as e:
            raise SeedImportError(f"Cannot prepare seed {seed.path}: {e}", seed_path=seed.path)
        (init_dir / ".ready").touch()
        logger.info(f"PREP: {seed.candidate.name} -> {target}")
        return SeedRunResult(SeedOutcome.PREPARED, f"prepared {seed.path}", path=str(target))

    async def run_import(self) -> SeedRunResult:
        """Import mode: a missing seed is fatal only in strict mode."""
        seed = self.resolve_seed()
        if seed is None:
            message = f"SEED_MODE=import but no seed file found in {self.config.seed_dir}"
            if self.config.strict:
                raise SeedImportError(message)
            logger.info(f"{message}, skipping import")
            return SeedRunResult(SeedOutcome.SKIPPED, message)
        return await self.import_seed(seed)

    async def auto(self) -> SeedRunResult:
        """Auto mode: import only into an empty database when a seed exists."""
        if self.status_file:
            status = read_status(self.status_file)
            if status is not None and status.volume_had_data(VolumeTag.DB.value):
                message = "prep found persistent database data, no seed required"
                logger.info(f"AUTO: {message}")
                return SeedRunResult(SeedOutcome.SKIPPED, message)

        seed = self.resolve_seed()
        await self.wait_for_db()
        empty = await self.database.table_count() == 0

        if not empty:
            message = "database already initialized, no action needed"
            logger.info(f"AUTO: {message}")
            return SeedRunResult(SeedOutcome.SKIPPED, message)
        if seed is None:
            message = "first deploy (no seed, empty database), starting clean"
            logger.info(f"AUTO: {message}")
            return SeedRunResult(SeedOutcome.CLEAN_START, message)

        logger.info("AUTO: seed exists and database is empty, importing")
        return await self.import_seed(seed)

    async def run(self, mode: Optional[SeedMode] = None) -> SeedRunResult:
        """Run the configured (or given) mode."""
        mode = mode or self.config.mode
        logger.info(
            f"Seed runner starting (mode={mode.value}, gzip={self.config.gzip}, "
            f"file={self.config.canonical_name}, strict={self.config.strict})"
        )
        if mode is SeedMode.PREP:
            return self.prep()
        if mode is SeedMode.IMPORT:
            return await self.run_import()
        if mode is SeedMode.EXPORT:
            return await self.export_seed()
        return await self.auto()
