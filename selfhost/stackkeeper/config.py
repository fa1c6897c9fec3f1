"""
Configuration management for Stackkeeper.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for the reference compose stack
    - Credentials (passphrase, database password) have no defaults
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep variable names compatible with the shell scripts they replace
      (BORG_REPO, BACKUP_RETENTION_*, MYSQL_*, SEED_*)
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip()
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'", setting=name)


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'", setting=name)


class SeedMode(Enum):
    """Seed runner modes."""

    AUTO = "auto"
    IMPORT = "import"
    EXPORT = "export"
    PREP = "prep"


@dataclass(frozen=True)
class RetentionPolicy:
    """Tiered retention applied after each backup.

    A tier is active iff its value is set and greater than zero.

    Attributes:
        keep_daily: Number of daily archives to keep
        keep_weekly: Number of weekly archives to keep
        keep_monthly: Number of monthly archives to keep
    """

    keep_daily: int | None = None
    keep_weekly: int | None = None
    keep_monthly: int | None = None

    @property
    def tiers(self) -> dict[str, int]:
        """Active tiers, keyed by prune rule name."""
        candidates = {
            "daily": self.keep_daily,
            "weekly": self.keep_weekly,
            "monthly": self.keep_monthly,
        }
        return {rule: n for rule, n in candidates.items() if n is not None and n > 0}

    @property
    def enabled(self) -> bool:
        return bool(self.tiers)

    @classmethod
    def from_env(cls) -> RetentionPolicy:
        """Load configuration from environment variables."""
        return cls(
            keep_daily=_env_optional_int("BACKUP_RETENTION_DAILY"),
            keep_weekly=_env_optional_int("BACKUP_RETENTION_WEEKLY"),
            keep_monthly=_env_optional_int("BACKUP_RETENTION_MONTHLY"),
        )


@dataclass(frozen=True)
class RepositoryConfig:
    """Snapshot repository configuration.

    Attributes:
        path: Repository location (local path or ssh:// URL)
        passphrase: Encryption passphrase (BORG_PASSPHRASE)
        encryption: Encryption mode used on init
        compression: Compression spec used on create
        borg_bin: Borg executable
        lock_timeout_seconds: Bounded wait for the repository lock
        retry_timeout_seconds: Budget for retrying transient connectivity failures
        lock_file: Explicit lock file path (overrides the derived one)
    """

    path: str = "/backup/repos/backup-repo"
    passphrase: str | None = None
    encryption: str = "repokey"
    compression: str = "lz4"
    borg_bin: str = "borg"
    lock_timeout_seconds: int = 300
    retry_timeout_seconds: int = 60
    lock_file: str | None = None

    @property
    def is_remote(self) -> bool:
        """Whether the repository is addressed as ssh://... or user@host:path."""
        return "://" in self.path or ":" in self.path.split("/", 1)[0]

    @property
    def lock_path(self) -> str:
        """Local lock file path.

        A sibling of a local repository so it exists before init; remote
        repositories get a per-URL file in the temp directory.
        """
        if self.lock_file:
            return self.lock_file
        if self.is_remote:
            digest = hashlib.sha256(self.path.encode("utf-8")).hexdigest()[:16]
            return os.path.join(tempfile.gettempdir(), f"stackkeeper-{digest}.lock")
        return self.path.rstrip("/") + ".lock"

    @classmethod
    def from_env(cls) -> RepositoryConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("BORG_REPO", "/backup/repos/backup-repo"),
            passphrase=os.getenv("BORG_PASSPHRASE") or None,
            encryption=os.getenv("BORG_ENCRYPTION", "repokey"),
            compression=os.getenv("BORG_COMPRESSION", "lz4"),
            borg_bin=os.getenv("BORG_BIN", "borg"),
            lock_timeout_seconds=_env_int("REPOSITORY_LOCK_TIMEOUT", "300"),
            retry_timeout_seconds=_env_int("REPOSITORY_RETRY_TIMEOUT", "60"),
            lock_file=os.getenv("REPOSITORY_LOCK_FILE") or None,
        )


@dataclass(frozen=True)
class VolumeConfig:
    """Monitored volume locations.

    Attributes:
        db_path: Database data volume mount point
        db_marker: Sub-directory whose non-emptiness signals database data
        app_path: Application file volume mount point
        app_marker: Sub-directory for the application volume (empty = root)
    """

    db_path: str = "/check_db_data"
    db_marker: str = "mysql"
    app_path: str = "/check_wp_data"
    app_marker: str = ""

    @classmethod
    def from_env(cls) -> VolumeConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_VOLUME_PATH", "/check_db_data"),
            db_marker=os.getenv("DB_VOLUME_MARKER", "mysql"),
            app_path=os.getenv("APP_VOLUME_PATH", os.getenv("WP_VOLUME_PATH", "/check_wp_data")),
            app_marker=os.getenv("APP_VOLUME_MARKER", ""),
        )


@dataclass(frozen=True)
class PrepConfig:
    """Startup prep configuration.

    Attributes:
        enabled: Whether volume automation runs at all
        status_file: Optional path of the versioned status record
        require_matching_timestamps: Restore only exact-timestamp pairs
    """

    enabled: bool = True
    status_file: str | None = None
    require_matching_timestamps: bool = False

    @classmethod
    def from_env(cls) -> PrepConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("PREP_ENABLED", "true"),
            status_file=os.getenv("STATUS_FILE") or None,
            require_matching_timestamps=_env_bool("RESTORE_REQUIRE_MATCHING_TIMESTAMPS", "false"),
        )


@dataclass(frozen=True)
class ScheduleConfig:
    """Periodic backup configuration.

    Attributes:
        interval_seconds: Interval between scheduled backups
        run_initial_backup: Run one backup immediately at start
        export_seed_after_backup: Refresh the canonical seed after each backup
    """

    interval_seconds: int = 86400
    run_initial_backup: bool = False
    export_seed_after_backup: bool = False

    @classmethod
    def from_env(cls) -> ScheduleConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=_env_int("BACKUP_INTERVAL_SECONDS", "86400"),
            run_initial_backup=_env_bool("RUN_INITIAL_BACKUP", "false"),
            export_seed_after_backup=_env_bool("SEED_EXPORT_AFTER_BACKUP", "false"),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Database client configuration.

    Attributes:
        host: Database host
        user: Database user
        password: Database password (passed via MYSQL_PWD, never argv)
        database: Database name
        client_bin: Client executable
        dump_bin: Dump executable
        client_opts: Extra flags for the client
        dump_opts: Extra flags for the dump tool
        wait_timeout_seconds: Bounded wait for readiness
        wait_interval_seconds: Delay between readiness probes
    """

    host: str = "db"
    user: str = "wpuser"
    password: str | None = None
    database: str = "wordpress"
    client_bin: str = "mariadb"
    dump_bin: str = "mariadb-dump"
    client_opts: tuple[str, ...] = ("--skip-ssl",)
    dump_opts: tuple[str, ...] = ()
    wait_timeout_seconds: int = 120
    wait_interval_seconds: int = 3

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("MYSQL_HOST", "db"),
            user=os.getenv("MYSQL_USER", "wpuser"),
            password=os.getenv("MYSQL_PASSWORD") or None,
            database=os.getenv("MYSQL_DATABASE", "wordpress"),
            client_bin=os.getenv("MDB_CLIENT_BIN", "mariadb"),
            dump_bin=os.getenv("MDB_DUMP_BIN", "mariadb-dump"),
            client_opts=tuple(os.getenv("MDB_OPTS", "--skip-ssl").split()),
            dump_opts=tuple(os.getenv("MDB_DUMP_OPTS", "").split()),
            wait_timeout_seconds=_env_int("WAIT_TIMEOUT", "120"),
            wait_interval_seconds=_env_int("WAIT_INTERVAL", "3"),
        )


@dataclass(frozen=True)
class SeedConfig:
    """Seed import/export configuration.

    Attributes:
        seed_dir: Directory holding seed dumps
        seed_file: Canonical seed slot file name
        mode: Seed runner mode
        gzip: Canonical slot is gzip-compressed
        strict: Missing seed in import mode is fatal
        auto_select: Fall back to the selector when the slot is empty
        keep_history: Also keep a timestamped copy of each export
        init_dir: Output directory for prep mode
    """

    seed_dir: str = "/db-seed"
    seed_file: str = "seed.sql"
    mode: SeedMode = SeedMode.AUTO
    gzip: bool = False
    strict: bool = False
    auto_select: bool = True
    keep_history: bool = False
    init_dir: str = "/init"

    @property
    def canonical_name(self) -> str:
        """Slot file name, normalized to the configured compression."""
        base = self.seed_file[:-3] if self.seed_file.endswith(".gz") else self.seed_file
        return f"{base}.gz" if self.gzip else base

    @property
    def canonical_path(self) -> str:
        return os.path.join(self.seed_dir, self.canonical_name)

    @classmethod
    def from_env(cls) -> SeedConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("SEED_MODE", "auto").strip().lower()
        if _env_bool("PREP_ONLY", "false"):
            mode_str = SeedMode.PREP.value
        try:
            mode = SeedMode(mode_str)
        except ValueError:
            raise ConfigurationError(
                f"Unknown SEED_MODE '{mode_str}'. Must be one of: auto, import, export, prep",
                setting="SEED_MODE",
            )

        return cls(
            seed_dir=os.getenv("SEED_DIR", "/db-seed"),
            seed_file=os.getenv("SEED_FILE", "seed.sql"),
            mode=mode,
            gzip=_env_bool("SEED_GZIP", "false"),
            strict=_env_bool("SEED_STRICT", "false"),
            auto_select=_env_bool("SEED_AUTO_SELECT", "true"),
            keep_history=_env_bool("SEED_KEEP_HISTORY", "false"),
            init_dir=os.getenv("INIT_DIR", "/init"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        log_file: Optional file that receives a copy of every record
    """

    log_level: str = "INFO"
    log_format: str = "text"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
            log_file=os.getenv("LOG_FILE") or None,
        )


@dataclass
class KeeperConfig:
    """Complete Stackkeeper configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        repository: Snapshot repository configuration
        retention: Retention tiers
        volumes: Monitored volumes
        prep: Startup prep configuration
        schedule: Periodic backup configuration
        database: Database client configuration
        seed: Seed import/export configuration
        observability: Logging configuration
    """

    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    volumes: VolumeConfig = field(default_factory=VolumeConfig)
    prep: PrepConfig = field(default_factory=PrepConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> KeeperConfig:
        """Load complete configuration from environment variables.

        Returns:
            KeeperConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        config = cls(
            repository=RepositoryConfig.from_env(),
            retention=RetentionPolicy.from_env(),
            volumes=VolumeConfig.from_env(),
            prep=PrepConfig.from_env(),
            schedule=ScheduleConfig.from_env(),
            database=DatabaseConfig.from_env(),
            seed=SeedConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Only checks that hold for every command. Credentials needed by a
        single command are checked by require_repository() and
        require_database().

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.repository.path:
            raise ConfigurationError("BORG_REPO is not defined", setting="BORG_REPO")
        if self.repository.lock_timeout_seconds < 0:
            raise ConfigurationError(
                "REPOSITORY_LOCK_TIMEOUT must not be negative", setting="REPOSITORY_LOCK_TIMEOUT"
            )
        if self.schedule.interval_seconds <= 0:
            raise ConfigurationError(
                "BACKUP_INTERVAL_SECONDS must be positive", setting="BACKUP_INTERVAL_SECONDS"
            )
        if self.database.wait_timeout_seconds < 0:
            raise ConfigurationError("WAIT_TIMEOUT must not be negative", setting="WAIT_TIMEOUT")
        for name, value in (
            ("BACKUP_RETENTION_DAILY", self.retention.keep_daily),
            ("BACKUP_RETENTION_WEEKLY", self.retention.keep_weekly),
            ("BACKUP_RETENTION_MONTHLY", self.retention.keep_monthly),
        ):
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} must not be negative", setting=name)
        if os.path.abspath(self.volumes.db_path) == os.path.abspath(self.volumes.app_path):
            raise ConfigurationError(
                "DB_VOLUME_PATH and APP_VOLUME_PATH must be different", setting="APP_VOLUME_PATH"
            )

    def require_repository(self) -> None:
        """Check settings needed by commands that touch the repository."""
        if self.repository.encryption != "none" and not self.repository.passphrase:
            raise ConfigurationError(
                f"BORG_PASSPHRASE is required for encryption mode '{self.repository.encryption}'",
                setting="BORG_PASSPHRASE",
            )

    def require_database(self) -> None:
        """Check settings needed by commands that talk to the database."""
        if not self.database.password:
            raise ConfigurationError("MYSQL_PASSWORD is empty", setting="MYSQL_PASSWORD")
        if not self.database.database:
            raise ConfigurationError("MYSQL_DATABASE is empty", setting="MYSQL_DATABASE")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Stackkeeper configuration loaded",
            extra={
                "repository": self.repository.path,
                "encryption": self.repository.encryption,
                "passphrase_set": self.repository.passphrase is not None,
                "retention": self.retention.tiers,
                "db_volume": self.volumes.db_path,
                "app_volume": self.volumes.app_path,
                "db_host": self.database.host,
                "database": self.database.database,
                "seed_dir": self.seed.seed_dir,
                "seed_mode": self.seed.mode.value,
                "log_level": self.observability.log_level,
            },
        )
