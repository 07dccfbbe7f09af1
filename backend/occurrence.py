"""
occurrence.py
─────────────
Pure calendar arithmetic: when does a reminder happen, and when is each of its
targets ('main' or a lead tag) due.

All instants are timezone-aware and expressed in the configured zone.
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from models import DAY_LABELS, MAIN, DeliveryStatus, ReminderBase

LEAD_DURATIONS: Dict[str, timedelta] = {
    "30m": timedelta(minutes=30),
    "1h":  timedelta(hours=1),
    "1d":  timedelta(hours=24),
    "3d":  timedelta(hours=72),
    "1w":  timedelta(hours=168),
}


def _hour_minute(value: str) -> Tuple[int, int]:
    hour, minute = value.split(":")
    return int(hour), int(minute)


def _python_weekday(label: str) -> int:
    # DAY_LABELS starts on Sunday, datetime.weekday() on Monday
    return (DAY_LABELS.index(label) - 1) % 7


def _at(day: date, hour: int, minute: int, tz: tzinfo) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)


def next_occurrence(
    reminder: ReminderBase,
    reference: datetime,
    tz: Optional[tzinfo] = None,
) -> Optional[datetime]:
    """
    Next qualifying instant at or after `reference`.

    specific-date: the fixed date+time; None when it already passed and the
    reminder is recurring (dates do not recur).
    day-of-week: nearest matching weekday+time >= reference; an exact match
    returns reference itself.
    """
    if reference.tzinfo is None:
        raise ValueError("reference instant must be timezone-aware")
    tz = tz or reference.tzinfo
    local = reference.astimezone(tz)
    hour, minute = _hour_minute(reminder.time)

    if reminder.schedule_mode == "specific-date":
        instant = _at(date.fromisoformat(reminder.date), hour, minute, tz)
        if instant < local and reminder.type == "recurring":
            return None
        return instant

    days_ahead = (_python_weekday(reminder.day) - local.weekday()) % 7
    candidate_day = local.date() + timedelta(days=days_ahead)
    candidate = _at(candidate_day, hour, minute, tz)
    if candidate < local:
        candidate = _at(candidate_day + timedelta(days=7), hour, minute, tz)
    return candidate


def lead_due_at(occurrence: datetime, tag: str) -> datetime:
    """occurrence minus the lead duration, in absolute time."""
    shifted = occurrence.astimezone(timezone.utc) - LEAD_DURATIONS[tag]
    return shifted.astimezone(occurrence.tzinfo)


def due_instants(reminder: ReminderBase, occurrence: Optional[datetime] = None) -> Dict[str, datetime]:
    occurrence = occurrence or reminder.occurrence
    if occurrence is None:
        return {}
    instants = {MAIN: occurrence}
    for tag in reminder.pre_reminder_offsets:
        instants[tag] = lead_due_at(occurrence, tag)
    return instants


def is_due(
    status: DeliveryStatus,
    due_at: datetime,
    now: datetime,
    retry_backoff: Optional[timedelta] = None,
) -> bool:
    """A failed target waits `retry_backoff` after its last attempt."""
    if due_at > now or status.settled:
        return False
    if retry_backoff and status.failed and status.last_attempt is not None:
        return status.last_attempt + retry_backoff <= now
    return True


def due_targets(
    reminder: ReminderBase,
    now: datetime,
    retry_backoff: Optional[timedelta] = None,
) -> List[Tuple[str, datetime]]:
    """
    Targets of the current cycle that should be sent at `now`.

    Lead targets stop being due once the main occurrence itself is reached;
    see stale_targets().
    """
    occurrence = reminder.occurrence
    due: List[Tuple[str, datetime]] = []
    for target, due_at in due_instants(reminder).items():
        if target != MAIN and occurrence is not None and occurrence <= now:
            continue
        if is_due(reminder.status_for(target), due_at, now, retry_backoff):
            due.append((target, due_at))
    return due


def stale_targets(reminder: ReminderBase, now: datetime, grace: timedelta) -> List[str]:
    """
    Unsettled targets that will never be sent for this cycle: every lead once
    the main occurrence is reached, and main itself once it is more than
    `grace` overdue (still failing, or the process was down).
    """
    occurrence = reminder.occurrence
    if occurrence is None or occurrence > now:
        return []
    stale = [
        tag for tag in reminder.pre_reminder_offsets
        if not reminder.status_for(tag).settled
    ]
    if occurrence < now - grace and not reminder.main_status.settled:
        stale.append(MAIN)
    return stale
