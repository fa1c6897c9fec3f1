"""
Integration tests for backup and restore against the in-memory repository.

These tests run the executors end to end over real directories:
- Backup run naming, conflicts and partial failures
- Retention and policy warnings
- Restore selection, skipping and partial restores
"""

import os
import tempfile
from datetime import datetime, timedelta
from typing import Dict

import pytest

from selfhost.stackkeeper.config import RetentionPolicy
from selfhost.stackkeeper.decision.detector import VolumeSpec
from selfhost.stackkeeper.errors import (
    ConflictError,
    PartialFailure,
    RepositoryError,
)
from selfhost.stackkeeper.repository import InMemoryRepository, VolumeTag
from selfhost.stackkeeper.snapshot.backup import BackupExecutor
from selfhost.stackkeeper.snapshot.restore import (
    NO_SNAPSHOTS_MESSAGE,
    RestoreExecutor,
    RestoreStatus,
)


class Ticker:
    """Clock that advances by a fixed step on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(days=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


def _write(path: str, content: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)


def _read_tree(root: str) -> Dict[str, bytes]:
    contents = {}
    for dirpath, _, files in os.walk(root):
        for name in files:
            path = os.path.join(dirpath, name)
            with open(path, "rb") as f:
                contents[os.path.relpath(path, root)] = f.read()
    return contents


@pytest.fixture
def workspace():
    """Create populated database and application volumes plus empty restore targets."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = os.path.join(tmpdir, "db")
        app = os.path.join(tmpdir, "app")
        _write(os.path.join(db, "mysql", "user.frm"), b"\x00\x01frm")
        _write(os.path.join(db, "wordpress", "wp_posts.ibd"), os.urandom(4096))
        _write(os.path.join(db, "ibdata1"), b"innodb")
        _write(os.path.join(app, "wp-config.php"), b"<?php // config\n")
        _write(os.path.join(app, "wp-content", "uploads", "2024", "logo.png"), os.urandom(2048))
        os.makedirs(os.path.join(tmpdir, "restore-db"))
        os.makedirs(os.path.join(tmpdir, "restore-app"))
        yield tmpdir


@pytest.fixture
def volumes(workspace):
    """Specs of the populated volumes."""
    return [
        VolumeSpec("database", VolumeTag.DB, os.path.join(workspace, "db"), "mysql"),
        VolumeSpec("application", VolumeTag.APP, os.path.join(workspace, "app")),
    ]


@pytest.fixture
def targets(workspace):
    """Specs of the empty restore targets."""
    return [
        VolumeSpec("database", VolumeTag.DB, os.path.join(workspace, "restore-db"), "mysql"),
        VolumeSpec("application", VolumeTag.APP, os.path.join(workspace, "restore-app")),
    ]


@pytest.fixture
def repo():
    """Create a fresh in-memory repository."""
    return InMemoryRepository()


class TestBackup:
    """Tests for BackupExecutor."""

    @pytest.mark.asyncio
    async def test_backup_initializes_repository(self, repo, volumes):
        """The first backup creates the repository."""
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))

        result = await executor.backup(volumes)

        assert await repo.exists()
        assert result.timestamp == "20240101_020000"
        assert result.archive_names == [
            "db_volume_20240101_020000",
            "app_volume_20240101_020000",
        ]

    @pytest.mark.asyncio
    async def test_successive_backups_create_distinct_pairs(self, repo, volumes):
        """Two runs at different times yield two full pairs."""
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2), timedelta(seconds=1)))

        first = await executor.backup(volumes)
        second = await executor.backup(volumes)

        assert first.timestamp != second.timestamp
        names = [a.name for a in await repo.list_archives()]
        assert len(names) == 4
        assert len(set(names)) == 4
        assert sum(n.startswith("db_volume_") for n in names) == 2

    @pytest.mark.asyncio
    async def test_same_timestamp_conflicts(self, repo, volumes):
        """A run never overwrites an existing archive."""
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2), timedelta(0)))
        await executor.backup(volumes)

        with pytest.raises(ConflictError):
            await executor.backup(volumes)

        assert len(await repo.list_archives()) == 2

    @pytest.mark.asyncio
    async def test_second_create_failure_is_partial(self, repo, volumes):
        """db archived, app failed: PartialFailure, no pruning."""
        repo.fail("create", RepositoryError("disk full", operation="create"), archive="app_volume_")
        executor = BackupExecutor(
            repo, RetentionPolicy(keep_daily=1), clock=Ticker(datetime(2024, 1, 1, 2))
        )

        with pytest.raises(PartialFailure) as exc_info:
            await executor.backup(volumes)

        assert exc_info.value.succeeded == ["db_volume_20240101_020000"]
        assert "application" in exc_info.value.failed
        assert [a.name for a in await repo.list_archives()] == ["db_volume_20240101_020000"]
        assert repo.compact_count == 0
        assert not repo.lock_held

    @pytest.mark.asyncio
    async def test_first_create_failure_propagates(self, repo, volumes):
        repo.fail("create", RepositoryError("disk full", operation="create"))
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))

        with pytest.raises(RepositoryError, match="disk full"):
            await executor.backup(volumes)

        assert await repo.list_archives() == []

    @pytest.mark.asyncio
    async def test_retention_per_tag(self, repo, volumes):
        """keep-daily K leaves the K newest pairs."""
        executor = BackupExecutor(
            repo, RetentionPolicy(keep_daily=3), clock=Ticker(datetime(2024, 1, 1, 2))
        )

        for _ in range(5):
            result = await executor.backup(volumes)

        names = [a.name for a in await repo.list_archives()]
        assert names == [
            "app_volume_20240103_020000",
            "app_volume_20240104_020000",
            "app_volume_20240105_020000",
            "db_volume_20240103_020000",
            "db_volume_20240104_020000",
            "db_volume_20240105_020000",
        ]
        assert sorted(result.pruned) == ["app_volume_20240102_020000", "db_volume_20240102_020000"]
        assert repo.compact_count == 5

    @pytest.mark.asyncio
    async def test_no_retention_skips_prune(self, repo, volumes):
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))

        for _ in range(3):
            await executor.backup(volumes)

        assert len(await repo.list_archives()) == 6
        assert repo.compact_count == 0

    @pytest.mark.asyncio
    async def test_prune_failure_is_a_warning(self, repo, volumes):
        """A failing prune does not fail the run; compaction still happens."""
        repo.fail("prune", RepositoryError("lock busy", operation="prune"), archive="db_volume_")
        executor = BackupExecutor(
            repo, RetentionPolicy(keep_daily=1), clock=Ticker(datetime(2024, 1, 1, 2))
        )

        result = await executor.backup(volumes)

        assert len(result.warnings) == 1
        assert result.warnings[0].operation == "prune"
        assert "db_volume_" in result.warnings[0].message
        assert len(result.archives) == 2
        assert repo.compact_count == 1

    @pytest.mark.asyncio
    async def test_compact_failure_is_a_warning(self, repo, volumes):
        repo.fail("compact", RepositoryError("no space", operation="compact"))
        executor = BackupExecutor(
            repo, RetentionPolicy(keep_weekly=2), clock=Ticker(datetime(2024, 1, 1, 2))
        )

        result = await executor.backup(volumes)

        assert [w.operation for w in result.warnings] == ["compact"]


class TestRestore:
    """Tests for RestoreExecutor."""

    @pytest.mark.asyncio
    async def test_round_trip(self, repo, volumes, targets):
        """Restoring the latest pair reproduces both volumes byte for byte."""
        await BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2))).backup(volumes)

        result = await RestoreExecutor(repo).restore(targets)

        assert result.status is RestoreStatus.RESTORED
        assert result.restored == {
            VolumeTag.DB: "db_volume_20240101_020000",
            VolumeTag.APP: "app_volume_20240101_020000",
        }
        for source, target in zip(volumes, targets):
            assert _read_tree(target.path) == _read_tree(source.path)

    @pytest.mark.asyncio
    async def test_uninitialized_repository_skips(self, repo, targets):
        """No repository at all is a fresh deploy, not an error."""
        result = await RestoreExecutor(repo).restore(targets)

        assert result.status is RestoreStatus.SKIPPED
        assert result.message == NO_SNAPSHOTS_MESSAGE

    @pytest.mark.asyncio
    async def test_empty_repository_skips(self, repo, targets):
        await repo.ensure_initialized()

        result = await RestoreExecutor(repo).restore(targets)

        assert result.status is RestoreStatus.SKIPPED
        assert os.listdir(targets[0].path) == []

    @pytest.mark.asyncio
    async def test_no_targets(self, repo):
        result = await RestoreExecutor(repo).restore([])

        assert result.status is RestoreStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_missing_tag_extracts_nothing(self, repo, volumes, targets):
        """With only database archives, neither volume is touched."""
        await BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2))).backup(volumes[:1])

        result = await RestoreExecutor(repo).restore(targets)

        assert result.status is RestoreStatus.SKIPPED
        assert os.listdir(targets[0].path) == []
        assert os.listdir(targets[1].path) == []

    @pytest.mark.asyncio
    async def test_latest_of_each_tag(self, repo, volumes, targets):
        """Asymmetric cadence: each volume gets its own newest archive."""
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))
        await executor.backup(volumes)
        await executor.backup(volumes[:1])

        result = await RestoreExecutor(repo).restore(targets)

        assert result.restored == {
            VolumeTag.DB: "db_volume_20240102_020000",
            VolumeTag.APP: "app_volume_20240101_020000",
        }

    @pytest.mark.asyncio
    async def test_matching_timestamps(self, repo, volumes, targets):
        """Strict pairing uses the newest timestamp both tags share."""
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))
        await executor.backup(volumes)
        await executor.backup(volumes[:1])

        result = await RestoreExecutor(repo, require_matching_timestamps=True).restore(targets)

        assert set(result.restored.values()) == {
            "db_volume_20240101_020000",
            "app_volume_20240101_020000",
        }

    @pytest.mark.asyncio
    async def test_matching_timestamps_without_common_pair(self, repo, volumes, targets):
        executor = BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2)))
        await executor.backup(volumes[:1])
        await executor.backup(volumes[1:])

        result = await RestoreExecutor(repo, require_matching_timestamps=True).restore(targets)

        assert result.status is RestoreStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_single_volume_restore(self, repo, volumes, targets):
        """Only the requested volume is restored."""
        await BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2))).backup(volumes)

        result = await RestoreExecutor(repo).restore(targets[1:])

        assert result.restored == {VolumeTag.APP: "app_volume_20240101_020000"}
        assert os.listdir(targets[0].path) == []

    @pytest.mark.asyncio
    async def test_partial_restore(self, repo, volumes, targets):
        """db restored, app failed: PARTIAL, db not rolled back."""
        await BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2))).backup(volumes)
        repo.fail("extract", RepositoryError("corrupt segment", operation="extract"), archive="app_volume_")

        result = await RestoreExecutor(repo).restore(targets)

        assert result.status is RestoreStatus.PARTIAL
        assert VolumeTag.DB in result.restored
        assert "corrupt segment" in result.failures[VolumeTag.APP]
        assert _read_tree(targets[0].path) == _read_tree(volumes[0].path)
        assert not repo.lock_held

    @pytest.mark.asyncio
    async def test_all_extractions_failed(self, repo, volumes, targets):
        await BackupExecutor(repo, clock=Ticker(datetime(2024, 1, 1, 2))).backup(volumes)
        repo.fail("extract", RepositoryError("corrupt", operation="extract"))
        repo.fail("extract", RepositoryError("corrupt", operation="extract"))

        with pytest.raises(RepositoryError):
            await RestoreExecutor(repo).restore(targets)
