"""
Retention rule evaluation.

Implements the keep-rule semantics of borg prune so the in-memory backend
prunes exactly like the production store:

- Archives are walked newest first and bucketed by period (day, ISO week,
  month) of their creation time.
- Each rule keeps the newest archive of each of its N most recent periods.
- Rules are evaluated in order (daily, weekly, monthly); an archive kept by
  an earlier rule does not count towards a later rule's N.
- If a rule runs out of periods before reaching N, it also keeps the oldest
  archive.

Invariants:
    - An archive is removed iff no rule keeps it
    - Evaluation is deterministic for a given input
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .base import SnapshotArchive

PERIOD_KEYS: Dict[str, Callable[[datetime], Tuple[int, ...]]] = {
    "daily": lambda ts: (ts.year, ts.month, ts.day),
    "weekly": lambda ts: tuple(ts.isocalendar())[:2],
    "monthly": lambda ts: (ts.year, ts.month),
}

RULE_ORDER = ("daily", "weekly", "monthly")


def _keep_for_rule(
    archives: Sequence[SnapshotArchive],
    rule: str,
    n: int,
    kept_because: Dict[str, str],
) -> None:
    period_of = PERIOD_KEYS[rule]
    last_period: Optional[Tuple[int, ...]] = None
    kept = 0
    oldest: Optional[SnapshotArchive] = None

    for archive in archives:
        oldest = archive
        period = period_of(archive.created_at)
        if period == last_period:
            continue
        last_period = period
        if archive.name in kept_because:
            continue
        kept_because[archive.name] = rule
        kept += 1
        if kept == n:
            return

    if oldest is not None and kept < n and oldest.name not in kept_because:
        kept_because[oldest.name] = f"{rule}[oldest]"


def select_kept(archives: Iterable[SnapshotArchive], rules: Dict[str, int]) -> Dict[str, str]:
    """Evaluate keep rules.

    Args:
        archives: Candidate archives
        rules: Rule name ("daily", "weekly", "monthly") to keep count

    Returns:
        Mapping of kept archive name to the rule that kept it
    """
    ordered = sorted(archives, key=lambda a: (a.created_at, a.name), reverse=True)
    kept_because: Dict[str, str] = {}
    for rule in RULE_ORDER:
        n = rules.get(rule)
        if n:
            _keep_for_rule(ordered, rule, n, kept_because)
    return kept_because


def select_pruned(archives: Iterable[SnapshotArchive], rules: Dict[str, int]) -> List[str]:
    """Names of archives no rule keeps, newest first."""
    archives = list(archives)
    if not rules:
        return []
    kept = select_kept(archives, rules)
    return [
        a.name
        for a in sorted(archives, key=lambda a: (a.created_at, a.name), reverse=True)
        if a.name not in kept
    ]
