"""
Change classification: decides whether a finished sync warrants
regenerating the daily briefing.

Data changes come from the persist counts. Time changes are calendar-only
and evaluated against the wall clock, in this order:

  1. the UTC day rolled over since the previous sync
  2. an event ended in (last_sync_at, now]
  3. an event start entered the urgency window:
     start in (last_sync_at + window, now + window]
  4. an event starts in the imminent window (now + 20min, now + 30min]

Rule 4 uses a half-open window whose width equals the auto-sync cadence, so
with wall-clock aligned syncs every event start falls into it exactly once.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Tuple

from omnisync.timeutil import start_of_day

REGENERATE_ALWAYS = frozenset({"connect", "disconnect", "manual", "date_boundary"})


@dataclass(frozen=True)
class ChangeDecision:
    data_changed: bool
    time_changed: bool
    reason: str


def classify_data_change(inserted: int, updated: int, deleted: int) -> bool:
    return inserted + updated + deleted > 0


def classify_time_change(
    events: Iterable[Tuple[datetime, datetime]],
    last_sync_at: Optional[datetime],
    now: datetime,
    urgency_window: timedelta = timedelta(hours=24),
    imminent_start: timedelta = timedelta(minutes=20),
    imminent_end: timedelta = timedelta(minutes=30),
) -> Tuple[bool, str]:
    """
    Evaluate the calendar time-based rules.

    Args:
        events: (start, end) pairs of the user's stored, non-cancelled events.
        last_sync_at: Completion time of the previous successful sync, or None.
        now: Current wall-clock time (naive UTC).

    Returns:
        (time_changed, reason)
    """
    bounds = list(events)

    if last_sync_at is not None:
        if start_of_day(now) > start_of_day(last_sync_at):
            return True, "UTC date boundary crossed since last sync"

        ended = sum(1 for _, end in bounds if last_sync_at < end <= now)
        if ended:
            return True, "%d event(s) ended since last sync" % ended

        was_threshold = last_sync_at + urgency_window
        now_threshold = now + urgency_window
        urgent = sum(1 for start, _ in bounds if was_threshold < start <= now_threshold)
        if urgent:
            return True, "%d event(s) entered the urgency window" % urgent

    window_start = now + imminent_start
    window_end = now + imminent_end
    imminent = sum(1 for start, _ in bounds if window_start < start <= window_end)
    if imminent:
        return True, "%d event(s) starting in the imminent window" % imminent

    return False, "no time-based change"


def classify_change(
    provider: str,
    inserted: int,
    updated: int,
    deleted: int,
    events: Iterable[Tuple[datetime, datetime]] = (),
    last_sync_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    **windows,
) -> ChangeDecision:
    """Combine the data and (calendar-only) time classification of one run."""
    data_changed = classify_data_change(inserted, updated, deleted)
    time_changed = False
    reason = "no time-based change"
    if provider == "calendar" and now is not None:
        time_changed, reason = classify_time_change(events, last_sync_at, now, **windows)
    if data_changed:
        reason = "%d inserted, %d updated, %d deleted; %s" % (
            inserted, updated, deleted, reason,
        )
    return ChangeDecision(data_changed=data_changed, time_changed=time_changed, reason=reason)


def should_regenerate(trigger: str, data_changed: bool, time_changed: bool) -> bool:
    """
    Whether the briefing must be regenerated after a sync.

    connect, disconnect, manual and date_boundary always regenerate; auto
    regenerates only when data or time changed.
    """
    if trigger in REGENERATE_ALWAYS:
        return True
    if trigger == "auto":
        return data_changed or time_changed
    return False
