"""
Calendar conflict detection with a sweep line.

Every interval contributes a start point and an end point. Points are
processed in time order with end points ahead of start points at the same
instant, so intervals that merely touch (10:00-11:00 and 11:00-12:00) are
never reported as overlapping. When an interval starts, it conflicts with
every interval still active.

Runs in O(n log n + k) where k is the number of conflicting pairs. Output
depends only on the timestamps and ids, never on input order.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

_END = 0
_START = 1


@dataclass(frozen=True)
class Interval:
    id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class ConflictDetail:
    """One overlapping pair, ordered so that ``first`` starts no later."""

    first: str
    second: str
    overlap_start: datetime
    overlap_end: datetime

    @property
    def overlap_minutes(self) -> int:
        return int((self.overlap_end - self.overlap_start).total_seconds() // 60)


def normalize_all_day(start_date: date, end_date_exclusive: date) -> Tuple[datetime, datetime]:
    """
    Convert a provider all-day range (end date exclusive) to stored bounds.

    The stored end is the last included day at 23:59:59.999.

    >>> normalize_all_day(date(2025, 3, 1), date(2025, 3, 2))
    (datetime.datetime(2025, 3, 1, 0, 0), datetime.datetime(2025, 3, 1, 23, 59, 59, 999000))
    """
    start = datetime(start_date.year, start_date.month, start_date.day)
    last_day = end_date_exclusive - timedelta(days=1)
    end = datetime(last_day.year, last_day.month, last_day.day, 23, 59, 59, 999000)
    return start, end


def detect_conflicts(intervals: Iterable[Interval]) -> Dict[str, Set[str]]:
    """
    Compute the symmetric overlap sets for a list of intervals.

    Args:
        intervals: Intervals to compare. Intervals with end <= start are
            zero-duration (or malformed) and never conflict.

    Returns:
        Dict mapping every input id to the set of ids it overlaps with
        (possibly empty).
    """
    items = list(intervals)
    result: Dict[str, Set[str]] = {iv.id: set() for iv in items}

    points: List[Tuple[datetime, int, str]] = []
    for iv in items:
        if iv.end <= iv.start:
            continue
        points.append((iv.start, _START, iv.id))
        points.append((iv.end, _END, iv.id))
    points.sort()

    active: Set[str] = set()
    for _, kind, iv_id in points:
        if kind == _END:
            active.discard(iv_id)
            continue
        for other in active:
            result[iv_id].add(other)
            result[other].add(iv_id)
        active.add(iv_id)

    return result


def conflict_details(
    intervals: Iterable[Interval],
    conflicts: Optional[Dict[str, Set[str]]] = None,
) -> List[ConflictDetail]:
    """
    Pairwise overlap windows, one entry per conflicting pair.

    Args:
        intervals: The same intervals passed to detect_conflicts().
        conflicts: Precomputed result of detect_conflicts(); computed if None.

    Returns:
        ConflictDetail list sorted by overlap start then ids.
    """
    by_id = {iv.id: iv for iv in intervals}
    if conflicts is None:
        conflicts = detect_conflicts(by_id.values())

    details: List[ConflictDetail] = []
    for a_id, others in conflicts.items():
        for b_id in others:
            if b_id <= a_id:
                continue
            a, b = by_id[a_id], by_id[b_id]
            first, second = (a, b) if (a.start, a.id) <= (b.start, b.id) else (b, a)
            details.append(
                ConflictDetail(
                    first=first.id,
                    second=second.id,
                    overlap_start=max(a.start, b.start),
                    overlap_end=min(a.end, b.end),
                )
            )
    details.sort(key=lambda d: (d.overlap_start, d.first, d.second))
    return details
