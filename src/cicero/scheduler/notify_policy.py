"""Decides whether a client gets a notification this run.

``notify = has_changes OR (within_window AND hourly_elapsed)``; when the
scheduler state could not be loaded the hourly branch is off for the whole run.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from cicero.scheduler.change_detector import ChangeDescriptor

SLOT_FORMAT = "%Y-%m-%dT%H"


@dataclass(frozen=True)
class NotifyDecision:
    notify: bool
    has_changes: bool
    hourly_due: bool
    reason: str


def to_local(now: datetime, timezone: str) -> datetime:
    return now.astimezone(ZoneInfo(timezone))


def is_within_notify_window(
    now: datetime,
    timezone: str,
    start_hour: int = 6,
    end_hour: int = 22,
) -> bool:
    """True when the local hour is in ``[start_hour, end_hour]``."""
    local_hour = to_local(now, timezone).hour
    return start_hour <= local_hour <= end_hour


def hourly_elapsed(
    now: datetime,
    last_notified_at: Optional[datetime],
    interval_seconds: int = 3600,
) -> bool:
    if last_notified_at is None:
        return True
    return now - last_notified_at >= timedelta(seconds=interval_seconds)


def slot_label(now: datetime, timezone: str) -> str:
    """Hour-granularity label in local time, e.g. ``2026-01-01T14``."""
    return to_local(now, timezone).strftime(SLOT_FORMAT)


def decide_notification(
    changes: ChangeDescriptor,
    *,
    now: datetime,
    last_notified_at: Optional[datetime],
    state_available: bool,
    timezone: str,
    window_start_hour: int = 6,
    window_end_hour: int = 22,
    interval_seconds: int = 3600,
) -> NotifyDecision:
    has_changes = changes.has_changes

    if not state_available:
        return NotifyDecision(
            notify=has_changes,
            has_changes=has_changes,
            hourly_due=False,
            reason="changes" if has_changes else "state_unavailable",
        )

    hourly_due = is_within_notify_window(
        now, timezone, window_start_hour, window_end_hour
    ) and hourly_elapsed(now, last_notified_at, interval_seconds)

    if has_changes:
        reason = "changes"
    elif hourly_due:
        reason = "hourly"
    else:
        reason = "not_due"

    return NotifyDecision(
        notify=has_changes or hourly_due,
        has_changes=has_changes,
        hourly_due=hourly_due,
        reason=reason,
    )
