"""
Stackkeeper - Main entry point.

Commands:
    prep        detect volumes, decide, then back up or restore
    backup      snapshot both volumes and apply retention
    restore     restore empty volumes from the latest archives
    list        list archives in the repository
    init        initialize the repository if missing
    seed        run the seed runner (prep/import/export/auto)
    seeds       show seed candidates and the one that would be used
    schedule    run periodic backups until stopped

Usage:
    stackkeeper prep
    stackkeeper backup
    stackkeeper list --json
    stackkeeper seed --mode export

Configuration is entirely via environment variables.
See config.py for all available settings.

Exit codes:
    0  success, including "nothing to restore" and seed skips
    1  operational failure (store, database, conflict, import/export)
    2  configuration error
    3  partial failure (one volume succeeded, the other did not)

Invariants:
    - Every StackkeeperError is reported as one operator-facing log line
    - Unexpected exceptions are logged with traceback and exit 1

How to change safely:
    - Add commands, keep existing names and exit codes stable
    - Map new error classes in exit_code_for()
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from typing import List, Optional

import json_log_formatter

from ._version import __version__
from .config import KeeperConfig, SeedMode
from .decision.detector import detect_volumes, volume_specs_from_config
from .errors import ConfigurationError, PartialFailure, StackkeeperError
from .prep import PrepPipeline
from .repository.base import SnapshotRepository, create_repository
from .seed.database import SeedDatabase, create_database
from .seed.runner import SeedRunner
from .seed.selector import discover_candidates, select_seed
from .snapshot.backup import BackupExecutor, BackupResult
from .snapshot.restore import RestoreExecutor, RestoreStatus
from .snapshot.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_PARTIAL = 3


def setup_logging(config: KeeperConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Stackkeeper configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.observability.log_file:
        handlers.append(logging.FileHandler(config.observability.log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = handlers

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def exit_code_for(error: BaseException) -> int:
    """Map an exception onto the process exit code."""
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIG
    if isinstance(error, PartialFailure):
        return EXIT_PARTIAL
    return EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackkeeper",
        description="Volume backup, restore and database seeding for a self-hosted stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("prep", help="Detect volumes, then back up or restore")
    subparsers.add_parser("backup", help="Snapshot both volumes and apply retention")

    restore_parser = subparsers.add_parser("restore", help="Restore volumes from the latest archives")
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Also restore into volumes that already hold data",
    )

    list_parser = subparsers.add_parser("list", help="List archives")
    list_parser.add_argument("--json", action="store_true", help="Print JSON")

    subparsers.add_parser("init", help="Initialize the repository if missing")

    seed_parser = subparsers.add_parser("seed", help="Run the seed runner")
    seed_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SeedMode],
        help="Override SEED_MODE",
    )

    subparsers.add_parser("seeds", help="Show seed candidates and the selected one")
    subparsers.add_parser("schedule", help="Run periodic backups until stopped")
    return parser


class Commands:
    """Command implementations sharing one configuration.

    Repository and database clients are created lazily so commands that
    do not need them do not require their credentials.
    """

    def __init__(
        self,
        config: KeeperConfig,
        repository: Optional[SnapshotRepository] = None,
        database: Optional[SeedDatabase] = None,
    ) -> None:
        self.config = config
        self._repository = repository
        self._database = database

    @property
    def repository(self) -> SnapshotRepository:
        if self._repository is None:
            self.config.require_repository()
            self._repository = create_repository(self.config.repository)
        return self._repository

    @property
    def database(self) -> SeedDatabase:
        if self._database is None:
            self.config.require_database()
            self._database = create_database(self.config.database)
        return self._database

    def seed_runner(self, require_database: bool = True) -> SeedRunner:
        return SeedRunner(
            self.config.seed,
            self.database if require_database else self._database,
            wait_timeout_seconds=self.config.database.wait_timeout_seconds,
            wait_interval_seconds=self.config.database.wait_interval_seconds,
            status_file=self.config.prep.status_file,
        )

    def backup_executor(self) -> BackupExecutor:
        return BackupExecutor(self.repository, self.config.retention)

    async def cmd_prep(self, args: argparse.Namespace) -> int:
        result = await PrepPipeline.from_config(self.config, self.repository).run()
        logger.info(f"Prep finished: {result.outcome}")
        return EXIT_OK

    async def cmd_backup(self, args: argparse.Namespace) -> int:
        result = await self.backup_executor().backup(volume_specs_from_config(self.config.volumes))
        if self.config.schedule.export_seed_after_backup:
            await self.seed_runner().export_seed()
        for warning in result.warnings:
            logger.warning(f"Backup completed with warning: {warning}")
        return EXIT_OK

    async def cmd_restore(self, args: argparse.Namespace) -> int:
        specs = volume_specs_from_config(self.config.volumes)
        if args.force:
            targets = specs
        else:
            empty = {s.tag for s in detect_volumes(specs) if not s.has_data}
            targets = [spec for spec in specs if spec.tag in empty]
            skipped = [spec.name for spec in specs if spec.tag not in empty]
            if skipped:
                logger.info(f"Not restoring populated volume(s): {', '.join(skipped)} (use --force)")

        executor = RestoreExecutor(
            self.repository,
            require_matching_timestamps=self.config.prep.require_matching_timestamps,
        )
        result = await executor.restore(targets)
        if result.status is RestoreStatus.PARTIAL:
            raise PartialFailure(
                result.message,
                succeeded=list(result.restored.values()),
                failed={tag.value: msg for tag, msg in result.failures.items()},
            )
        logger.info(f"Restore: {result.message}")
        return EXIT_OK

    async def cmd_list(self, args: argparse.Namespace) -> int:
        archives = await self.repository.list_archives()
        if args.json:
            payload = [
                {"name": a.name, "tag": a.tag.value, "created_at": a.created_at.isoformat()}
                for a in archives
            ]
            print(json.dumps(payload, indent=2))
        else:
            for archive in archives:
                print(f"{archive.name}\t{archive.created_at:%Y-%m-%d %H:%M:%S}")
        return EXIT_OK

    async def cmd_init(self, args: argparse.Namespace) -> int:
        created = await self.repository.ensure_initialized()
        logger.info("Repository initialized" if created else "Repository already initialized")
        return EXIT_OK

    async def cmd_seed(self, args: argparse.Namespace) -> int:
        mode = SeedMode(args.mode) if args.mode else self.config.seed.mode
        if mode is SeedMode.PREP:
            result = self.seed_runner(require_database=False).prep()
        else:
            result = await self.seed_runner().run(mode)
        logger.info(f"Seed runner finished: {result.outcome.value} ({result.message})")
        return EXIT_OK

    async def cmd_seeds(self, args: argparse.Namespace) -> int:
        candidates = discover_candidates(self.config.seed.seed_dir)
        selected = select_seed(candidates)
        for candidate in candidates:
            marker = "*" if selected and selected.candidate == candidate else " "
            kind = "symlink" if candidate.is_symlink else "file"
            print(f"{marker} {candidate.name}\t{candidate.size_bytes}\t{kind}\t{candidate.mtime:%Y-%m-%d %H:%M}")
        if selected is None:
            print("No seed candidates found")
        else:
            print(f"Selected: {selected.candidate.name} ({selected.reason})")
        return EXIT_OK

    async def cmd_schedule(self, args: argparse.Namespace) -> int:
        after_backup = None
        if self.config.schedule.export_seed_after_backup:
            runner = self.seed_runner()

            async def export_after_backup(result: BackupResult) -> None:
                await runner.export_seed()

            after_backup = export_after_backup

        scheduler = BackupScheduler(
            self.backup_executor(),
            volume_specs_from_config(self.config.volumes),
            interval_seconds=self.config.schedule.interval_seconds,
            run_initial_backup=self.config.schedule.run_initial_backup,
            after_backup=after_backup,
        )

        loop = asyncio.get_running_loop()

        def handle_signal(sig: int) -> None:
            logger.info(f"Received signal {sig}, stopping scheduler")
            loop.create_task(scheduler.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig)

        await scheduler.start()
        return EXIT_OK


async def run(
    args: argparse.Namespace,
    config: KeeperConfig,
    repository: Optional[SnapshotRepository] = None,
    database: Optional[SeedDatabase] = None,
) -> int:
    """Run one command and return its exit code.

    Args:
        args: Parsed command line
        config: Stackkeeper configuration
        repository: Repository override (tests)
        database: Database override (tests)
    """
    commands = Commands(config, repository=repository, database=database)
    handler = getattr(commands, f"cmd_{args.command}")
    try:
        return await handler(args)
    except StackkeeperError as e:
        code = exit_code_for(e)
        logger.error(
            f"{args.command} failed: {e.message}",
            extra={"code": e.code, "details": e.details, "exit_code": code},
        )
        return code
    except Exception as e:
        logger.error(f"{args.command} failed unexpectedly: {e}", exc_info=True)
        return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = KeeperConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    if args.log_level:
        config.observability = dataclasses.replace(config.observability, log_level=args.log_level)
    setup_logging(config)
    config.log_config()

    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
