"""
Unit tests for retention rule evaluation.

Tests cover:
- Daily, weekly and monthly buckets
- Rule interaction
- Keeping the oldest archive when a rule runs short
"""

from datetime import datetime, timedelta

from selfhost.stackkeeper.repository.base import SnapshotArchive
from selfhost.stackkeeper.repository.retention import select_kept, select_pruned


def _archives(start: datetime, count: int, step: timedelta, tag: str = "db"):
    archives = []
    for i in range(count):
        moment = start + step * i
        archives.append(SnapshotArchive.parse(f"{tag}_volume_{moment:%Y%m%d_%H%M%S}"))
    return archives


class TestSelectPruned:
    """Tests for select_pruned()."""

    def test_no_rules_prunes_nothing(self):
        archives = _archives(datetime(2024, 1, 1, 2), 5, timedelta(days=1))

        assert select_pruned(archives, {}) == []

    def test_keep_daily_keeps_most_recent(self):
        """N archives on distinct days, keep-daily K: the K newest survive."""
        archives = _archives(datetime(2024, 1, 1, 2), 10, timedelta(days=1))

        pruned = select_pruned(archives, {"daily": 3})

        kept = sorted(set(a.name for a in archives) - set(pruned))
        assert kept == [a.name for a in archives[-3:]]
        assert len(pruned) == 7

    def test_keep_daily_more_than_available(self):
        """K > N keeps everything."""
        archives = _archives(datetime(2024, 1, 1, 2), 3, timedelta(days=1))

        assert select_pruned(archives, {"daily": 7}) == []

    def test_same_day_keeps_newest_of_day(self):
        """Several archives on one day count as one daily period."""
        archives = _archives(datetime(2024, 1, 1, 1), 4, timedelta(hours=5))

        pruned = select_pruned(archives, {"daily": 1})

        assert archives[-1].name not in pruned
        assert len(pruned) == 3

    def test_weekly_buckets(self):
        """One archive per ISO week survives keep-weekly."""
        archives = _archives(datetime(2024, 1, 1, 2), 21, timedelta(days=1))

        kept = select_kept(archives, {"weekly": 2})

        assert sorted(kept) == ["db_volume_20240114_020000", "db_volume_20240121_020000"]

    def test_monthly_buckets(self):
        archives = _archives(datetime(2024, 1, 15, 2), 4, timedelta(days=31))

        kept = select_kept(archives, {"monthly": 2})

        assert sorted(kept) == ["db_volume_20240317_020000", "db_volume_20240417_020000"]

    def test_rules_do_not_double_count(self):
        """An archive kept by daily does not consume a weekly slot."""
        archives = _archives(datetime(2024, 1, 1, 2), 14, timedelta(days=1))

        kept = select_kept(archives, {"daily": 1, "weekly": 1})

        assert kept["db_volume_20240114_020000"] == "daily"
        assert kept["db_volume_20240107_020000"] == "weekly"
        assert len(kept) == 2

    def test_short_rule_keeps_oldest(self):
        """A rule that runs out of periods also keeps the oldest archive."""
        archives = _archives(datetime(2024, 1, 1, 2), 3, timedelta(hours=1))

        kept = select_kept(archives, {"weekly": 4})

        assert set(kept) == {archives[-1].name, archives[0].name}
        assert kept[archives[0].name] == "weekly[oldest]"
