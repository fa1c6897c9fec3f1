"""
Unit tests for the borg CLI client.

The subprocess layer (_run) is replaced by a scripted fake, so these tests
check the command lines we issue and how we interpret borg's answers.

Tests cover:
- Command construction
- Output parsing (list, prune)
- Exit status classification
"""

import json
import os
import tempfile
from typing import Dict, List, Optional, Sequence

import pytest

from selfhost.stackkeeper.config import RepositoryConfig
from selfhost.stackkeeper.errors import (
    ConfigurationError,
    ConflictError,
    ConnectivityError,
    LockTimeoutError,
    RepositoryError,
    RepositoryNotFoundError,
)
from selfhost.stackkeeper.repository.borg import BorgRepository, CommandResult


class ScriptedBorg(BorgRepository):
    """BorgRepository whose borg invocations are answered from a script."""

    def __init__(self, config: RepositoryConfig) -> None:
        super().__init__(config)
        self.calls: List[List[str]] = []
        self.cwds: List[Optional[str]] = []
        self.responses: Dict[str, List[CommandResult]] = {}

    def respond(self, operation: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses.setdefault(operation, []).append(
            CommandResult(args=[], returncode=returncode, stdout=stdout, stderr=stderr)
        )

    async def _run(self, args: Sequence[str], cwd: Optional[str] = None) -> CommandResult:
        self.calls.append(list(args))
        self.cwds.append(cwd)
        queue = self.responses.get(args[0], [])
        if queue:
            return queue.pop(0)
        return CommandResult(args=list(args), returncode=0, stdout="", stderr="")

    def calls_for(self, operation: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == operation]


def _list_json(*names: str) -> str:
    return json.dumps(
        {"archives": [{"name": n, "time": "2024-01-01T02:00:00.000000"} for n in names]}
    )


class TestBorgRepository:
    """Tests for BorgRepository."""

    @pytest.fixture
    def workdir(self):
        """Create a directory for the repository, its lock and a volume."""
        with tempfile.TemporaryDirectory() as tmpdir:
            os.mkdir(os.path.join(tmpdir, "volume"))
            yield tmpdir

    @pytest.fixture
    def repo(self, workdir):
        """Create a scripted client with a local repository."""
        config = RepositoryConfig(
            path=os.path.join(workdir, "repo"),
            passphrase="s3cret",
            lock_timeout_seconds=5,
            retry_timeout_seconds=0,
        )
        return ScriptedBorg(config)

    def test_passphrase_in_environment(self, repo):
        """The passphrase is exported, never passed as an argument."""
        env = repo._env()

        assert env["BORG_PASSPHRASE"] == "s3cret"

    def test_lock_file_next_to_repository(self, repo, workdir):
        assert repo.config.lock_path == os.path.join(workdir, "repo.lock")

    @pytest.mark.asyncio
    async def test_exists(self, repo):
        """A missing repository is reported, not raised."""
        repo.respond("info", returncode=2, stderr="Repository /x does not exist.")

        assert await repo.exists() is False
        assert await repo.exists() is True

    @pytest.mark.asyncio
    async def test_read_commands_wait_for_lock(self, repo):
        """Read-only commands wait out a concurrent create instead of failing."""
        await repo.exists()
        await repo.info()

        for call in repo.calls_for("info"):
            assert call[call.index("--lock-wait") + 1] == "5"

    @pytest.mark.asyncio
    async def test_ensure_initialized_runs_init(self, repo):
        repo.respond("info", returncode=2, stderr="Repository /x does not exist.")

        assert await repo.ensure_initialized() is True

        (init,) = repo.calls_for("init")
        assert init == ["init", "--encryption=repokey", repo.config.path]
        assert "s3cret" not in " ".join(init)

    @pytest.mark.asyncio
    async def test_create_command(self, repo, workdir):
        """Archives are created from inside the volume with relative paths."""
        volume = os.path.join(workdir, "volume")
        repo.respond("list", stdout=_list_json())

        archive = await repo.create("db_volume_20240101_020000", volume, compression="zstd")

        (create,) = repo.calls_for("create")
        assert create[-2:] == [f"{repo.config.path}::db_volume_20240101_020000", "."]
        assert "--compression" in create
        assert create[create.index("--compression") + 1] == "zstd"
        assert "--lock-wait" in create
        assert repo.cwds[repo.calls.index(create)] == volume
        assert archive.name == "db_volume_20240101_020000"

    @pytest.mark.asyncio
    async def test_create_existing_name_conflicts(self, repo, workdir):
        """An existing archive is never overwritten."""
        repo.respond("list", stdout=_list_json("db_volume_20240101_020000"))

        with pytest.raises(ConflictError):
            await repo.create("db_volume_20240101_020000", os.path.join(workdir, "volume"))

        assert repo.calls_for("create") == []

    @pytest.mark.asyncio
    async def test_create_missing_source(self, repo, workdir):
        with pytest.raises(RepositoryError):
            await repo.create("db_volume_20240101_020000", os.path.join(workdir, "nope"))

    @pytest.mark.asyncio
    async def test_list_parses_and_filters(self, repo):
        """Foreign archive names are ignored; the rest are sorted."""
        repo.respond(
            "list",
            stdout=_list_json("db_volume_20240102_020000", "manual-copy", "app_volume_20240102_020000"),
        )

        archives = await repo.list_archives()

        assert [a.name for a in archives] == [
            "app_volume_20240102_020000",
            "db_volume_20240102_020000",
        ]
        assert archives[0].created_at.year == 2024
        (listing,) = repo.calls_for("list")
        assert listing[listing.index("--lock-wait") + 1] == "5"

    @pytest.mark.asyncio
    async def test_list_unparsable_output(self, repo):
        repo.respond("list", stdout="not json")

        with pytest.raises(RepositoryError):
            await repo.list_archives()

    @pytest.mark.asyncio
    async def test_prune_command_and_output(self, repo):
        """Prune is scoped by glob and reports what borg removed."""
        repo.respond(
            "prune",
            stderr=(
                "Keeping archive (rule: daily #1): db_volume_20240103_020000\n"
                "Pruning archive (1/2): db_volume_20240102_020000\n"
                "Pruning archive (2/2): db_volume_20240101_020000\n"
            ),
        )

        pruned = await repo.prune(prefix="db_volume_", keep_daily=1, keep_monthly=6)

        (prune,) = repo.calls_for("prune")
        assert prune[prune.index("--glob-archives") + 1] == "db_volume_*"
        assert "--keep-daily=1" in prune
        assert "--keep-monthly=6" in prune
        assert not any(arg.startswith("--keep-weekly") for arg in prune)
        assert pruned == ["db_volume_20240102_020000", "db_volume_20240101_020000"]

    @pytest.mark.asyncio
    async def test_prune_without_rules_is_skipped(self, repo):
        assert await repo.prune(prefix="db_volume_", keep_daily=0) == []
        assert repo.calls == []

    @pytest.mark.asyncio
    async def test_extract_runs_in_target(self, repo, workdir):
        target = os.path.join(workdir, "restore", "db")

        await repo.extract("db_volume_20240101_020000", target)

        assert os.path.isdir(target)
        (extract,) = repo.calls_for("extract")
        assert extract[-1] == f"{repo.config.path}::db_volume_20240101_020000"
        assert repo.cwds[-1] == target

    @pytest.mark.asyncio
    async def test_warning_exit_status_is_not_an_error(self, repo):
        """borg exit status 1 means completed with warnings."""
        repo.respond("compact", returncode=1, stderr="some files changed while reading")

        await repo.compact()

    @pytest.mark.parametrize(
        "stderr,expected",
        [
            ("Failed to create/acquire the lock /repo/lock.exclusive (timeout).", LockTimeoutError),
            ("passphrase supplied in BORG_PASSPHRASE is incorrect", ConfigurationError),
            ("Remote: ssh: connect to host backup: Connection refused", ConnectivityError),
            ("Repository /repo does not exist.", RepositoryNotFoundError),
            ("Data integrity error: segment 12 checksum mismatch", RepositoryError),
        ],
    )
    @pytest.mark.asyncio
    async def test_error_classification(self, repo, stderr, expected):
        repo.respond("compact", returncode=2, stderr=stderr)

        with pytest.raises(expected) as exc_info:
            await repo.compact()

        assert "borg compact failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connectivity_retried(self, repo):
        """Transient failures are retried within the budget."""
        repo.config = RepositoryConfig(
            path=repo.config.path,
            passphrase="s3cret",
            retry_timeout_seconds=5,
        )
        repo.respond("info", returncode=2, stderr="Connection timed out")

        await repo.info()

        assert len(repo.calls_for("info")) == 2

    def test_remote_lock_path(self):
        """Remote repositories lock on a per-URL file in the temp directory."""
        config = RepositoryConfig(path="ssh://backup@nas/./repo")

        assert config.is_remote
        assert config.lock_path.startswith(tempfile.gettempdir())
        assert config.lock_path.endswith(".lock")
