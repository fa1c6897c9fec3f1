"""
Unit tests for seed file selection.

Tests cover:
- The preference chain
- Determinism
- Discovery of candidates on disk
"""

import os
import tempfile
from datetime import datetime

import pytest

from selfhost.stackkeeper.seed.selector import (
    SeedCandidate,
    discover_candidates,
    select_seed,
)


def _candidate(path: str, symlink: bool = False, size: int = 100) -> SeedCandidate:
    return SeedCandidate(
        path=path,
        is_compressed=path.endswith(".sql.gz"),
        is_symlink=symlink,
        size_bytes=size,
        mtime=datetime(2024, 1, 1),
    )


class TestSelectSeed:
    """Tests for select_seed()."""

    def test_no_candidates(self):
        """An empty set yields None."""
        assert select_seed([]) is None

    def test_single_candidate(self):
        """A lone candidate is used even if it is a symlink."""
        only = _candidate("/seed/seed_latest.sql.gz", symlink=True)

        selected = select_seed([only])

        assert selected.candidate == only
        assert selected.reason == "only candidate"

    def test_real_sql_beats_symlinked_gz(self):
        """One real .sql and one symlinked .sql.gz: the real .sql wins."""
        real = _candidate("/seed/seed.sql")
        link = _candidate("/seed/seed_latest.sql.gz", symlink=True)

        assert select_seed([link, real]).candidate == real

    def test_real_files_beat_latest_symlinks(self):
        """A concrete dump wins over a *_latest pointer."""
        link = _candidate("/seed/seed_latest.sql", symlink=True)
        real_gz = _candidate("/seed/seed_20240101_020000.sql.gz")

        selected = select_seed([link, real_gz])

        assert selected.candidate == real_gz
        assert selected.reason == "real GZ file"

    def test_uncompressed_preferred_among_real_files(self):
        """Real .sql wins over real .sql.gz."""
        gz = _candidate("/seed/a.sql.gz")
        sql = _candidate("/seed/b.sql")

        assert select_seed([gz, sql]).candidate == sql

    def test_first_real_sql_in_lexical_order(self):
        """Among several real .sql files the lexically first wins."""
        files = [_candidate("/seed/seed_2.sql"), _candidate("/seed/seed_1.sql")]

        assert select_seed(files).candidate.path == "/seed/seed_1.sql"

    def test_latest_sql_symlink_before_latest_gz(self):
        """Without real files, the *_latest.sql pointer comes first."""
        gz = _candidate("/seed/seed_latest.sql.gz", symlink=True)
        sql = _candidate("/seed/seed_latest.sql", symlink=True)

        selected = select_seed([gz, sql])

        assert selected.candidate == sql
        assert selected.reason == "latest SQL symlink"

    def test_latest_gz_symlink(self):
        """The *_latest.sql.gz pointer beats other symlinks."""
        gz = _candidate("/seed/seed_latest.sql.gz", symlink=True)
        other = _candidate("/seed/other.sql.gz", symlink=True)

        assert select_seed([other, gz]).candidate == gz

    def test_fallback_first_sql_symlink(self):
        """Only non-latest symlinks: first .sql, then first .sql.gz."""
        gz = _candidate("/seed/a.sql.gz", symlink=True)
        sql = _candidate("/seed/b.sql", symlink=True)

        selected = select_seed([gz, sql])

        assert selected.candidate == sql
        assert selected.reason == "first SQL file"

    def test_fallback_first_gz_symlink(self):
        gzs = [_candidate("/seed/b.sql.gz", symlink=True), _candidate("/seed/a.sql.gz", symlink=True)]

        assert select_seed(gzs).candidate.path == "/seed/a.sql.gz"

    def test_deterministic(self):
        """Repeated selection over any ordering returns the same candidate."""
        files = [
            _candidate("/seed/x.sql.gz"),
            _candidate("/seed/seed_latest.sql", symlink=True),
            _candidate("/seed/m.sql"),
            _candidate("/seed/c.sql"),
        ]

        results = {select_seed(list(reversed(files))).path, select_seed(files).path}
        results.add(select_seed(files).path)

        assert results == {"/seed/c.sql"}


class TestDiscoverCandidates:
    """Tests for discover_candidates()."""

    @pytest.fixture
    def seed_dir(self):
        """Create a temporary seed directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def _write(self, seed_dir: str, name: str, content: bytes = b"SELECT 1;") -> str:
        path = os.path.join(seed_dir, name)
        with open(path, "wb") as f:
            f.write(content)
        return path

    def test_missing_directory(self, seed_dir):
        assert discover_candidates(os.path.join(seed_dir, "missing")) == []

    def test_filters_and_orders(self, seed_dir):
        """Only *.sql and *.sql.gz files, in lexical order."""
        self._write(seed_dir, "b.sql")
        self._write(seed_dir, "a.sql.gz")
        self._write(seed_dir, "seed.sql.sha256")
        self._write(seed_dir, "seed.sql.tmp")
        self._write(seed_dir, "notes.txt")
        os.mkdir(os.path.join(seed_dir, "dir.sql"))

        names = [c.name for c in discover_candidates(seed_dir)]

        assert names == ["a.sql.gz", "b.sql"]

    def test_symlinks(self, seed_dir):
        """Symlinks are reported as such; broken ones are skipped."""
        self._write(seed_dir, "seed_20240101.sql", b"x" * 42)
        os.symlink("seed_20240101.sql", os.path.join(seed_dir, "seed_latest.sql"))
        os.symlink("gone.sql.gz", os.path.join(seed_dir, "seed_latest.sql.gz"))

        candidates = {c.name: c for c in discover_candidates(seed_dir)}

        assert set(candidates) == {"seed_20240101.sql", "seed_latest.sql"}
        assert candidates["seed_latest.sql"].is_symlink
        assert candidates["seed_latest.sql"].size_bytes == 42
        assert not candidates["seed_20240101.sql"].is_symlink

    def test_compressed_flag(self, seed_dir):
        self._write(seed_dir, "seed.sql.gz")

        (candidate,) = discover_candidates(seed_dir)

        assert candidate.is_compressed
