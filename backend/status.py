"""
status.py
─────────
Delivery status state machine.

Per target ('main' or a lead tag) a status is untouched, sent (terminal for the
occurrence), failed (retried on a later tick) or skipped (terminal, never
sent because it went stale). The transition functions are pure: they return
an updated copy and leave the input alone. StatusBook applies them through the
record store's atomic read-modify-write.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from models import DeliveryStatus, RecurringStatus, ReminderBase
from occurrence import lead_due_at, next_occurrence

# Fields that define what was promised to the contact; changing any of them
# invalidates prior delivery proof.
SCHEDULE_IDENTITY_FIELDS = ("schedule_mode", "day", "date", "time", "type", "title")


def _fresh(due_at: datetime, now: datetime, grace: timedelta) -> DeliveryStatus:
    return DeliveryStatus(scheduled_for=due_at, skipped=due_at < now - grace)


def has_cycle(reminder: ReminderBase) -> bool:
    return reminder.main_status.scheduled_for is not None or reminder.main_status.settled


def initialize_cycle(
    reminder: ReminderBase,
    occurrence: Optional[datetime],
    now: datetime,
    grace: timedelta,
) -> ReminderBase:
    """
    Fresh statuses for the cycle ending at `occurrence`.

    Targets already more than `grace` in the past are skipped, so creating a
    reminder two days ahead does not fire its one-week lead immediately. A
    None occurrence means the reminder is expired: everything is skipped.
    """
    updated = reminder.model_copy(deep=True)
    if occurrence is None:
        updated.main_status = DeliveryStatus(skipped=True)
        updated.pre_reminder_status = {
            tag: DeliveryStatus(skipped=True) for tag in reminder.pre_reminder_offsets
        }
        return updated

    updated.main_status = _fresh(occurrence, now, grace)
    updated.pre_reminder_status = {
        tag: _fresh(lead_due_at(occurrence, tag), now, grace)
        for tag in reminder.pre_reminder_offsets
    }
    return updated


def start_cycle(reminder: ReminderBase, now: datetime, grace: timedelta) -> ReminderBase:
    return initialize_cycle(reminder, next_occurrence(reminder, now), now, grace)


def mark_sent(reminder: ReminderBase, target: str, now: datetime) -> ReminderBase:
    current = reminder.status_for(target)
    if current.sent:
        return reminder
    updated = reminder.model_copy(deep=True)
    updated.set_status(target, current.model_copy(update={
        "sent": True, "sent_at": now, "failed": False, "claimed_at": None,
    }))
    return updated


def mark_failed(
    reminder: ReminderBase,
    target: str,
    error: object,
    now: datetime,
    max_retries: Optional[int] = None,
) -> ReminderBase:
    """
    Record a failed attempt. Once `retries` reaches max_retries the target is
    failed permanently: it stays `failed` and is also `skipped`.
    """
    current = reminder.status_for(target)
    if current.sent:
        return reminder
    retries = current.retries + 1
    updated = reminder.model_copy(deep=True)
    updated.set_status(target, current.model_copy(update={
        "failed":       True,
        "skipped":      current.skipped or (max_retries is not None and retries >= max_retries),
        "retries":      retries,
        "last_attempt": now,
        "last_error":   str(error) or error.__class__.__name__,
        "claimed_at":   None,
    }))
    return updated


def claim(reminder: ReminderBase, target: str, now: datetime, lease: timedelta) -> Optional[ReminderBase]:
    """
    Reserve `target` for one send, or None when it is already settled or
    another sender holds an unexpired claim on it.
    """
    current = reminder.status_for(target)
    if current.settled:
        return None
    if current.claimed_at is not None and current.claimed_at + lease > now:
        return None
    updated = reminder.model_copy(deep=True)
    updated.set_status(target, current.model_copy(update={"claimed_at": now}))
    return updated


def mark_skipped(reminder: ReminderBase, targets: Iterable[str]) -> ReminderBase:
    updated = reminder.model_copy(deep=True)
    for target in targets:
        current = updated.status_for(target)
        if not current.settled:
            updated.set_status(target, current.model_copy(update={"skipped": True}))
    return updated


def is_cycle_complete(reminder: ReminderBase) -> bool:
    return all(reminder.status_for(target).settled for target in reminder.targets())


def roll_over(reminder: ReminderBase, now: datetime, grace: timedelta) -> Optional[ReminderBase]:
    """
    New cycle for a recurring reminder whose current cycle is closed, or None.

    The reset only happens once the next computed occurrence differs from the
    one just completed.
    """
    if reminder.type != "recurring" or not is_cycle_complete(reminder):
        return None
    closed = reminder.occurrence
    if closed is None:
        return None
    upcoming = next_occurrence(reminder, now)
    if upcoming is None or upcoming == closed:
        return None
    updated = initialize_cycle(reminder, upcoming, now, grace)
    updated.recurring_status = RecurringStatus(last_completed=closed)
    return updated


def schedule_changed(old: ReminderBase, new: ReminderBase) -> bool:
    for name in SCHEDULE_IDENTITY_FIELDS:
        if getattr(old, name, None) != getattr(new, name, None):
            return True
    return set(old.pre_reminder_offsets) != set(new.pre_reminder_offsets)


class StatusBook:
    """
    Status view over a record store.

    Every mark is one store.update() call, i.e. one read-modify-write under
    the owner's lock, so the tick and a manual dispatch never lose each
    other's updates.
    """

    def __init__(self, store, clock, grace: timedelta = timedelta(minutes=5)):
        self._store = store
        self._clock = clock
        self._grace = grace

    def update(self, owner: str, reminder_id: str, fn: Callable[[ReminderBase], ReminderBase]) -> Optional[ReminderBase]:
        return self._store.update(owner, reminder_id, fn)

    def mark_sent(self, owner: str, reminder_id: str, target: str) -> Optional[ReminderBase]:
        now = self._clock.now()
        return self.update(owner, reminder_id, lambda r: mark_sent(r, target, now))

    def mark_failed(
        self, owner: str, reminder_id: str, target: str, error: object, max_retries: Optional[int] = None
    ) -> Optional[ReminderBase]:
        now = self._clock.now()
        return self.update(owner, reminder_id, lambda r: mark_failed(r, target, error, now, max_retries))

    def claim(self, owner: str, reminder_id: str, target: str, lease: timedelta) -> Optional[ReminderBase]:
        """The claimed reminder, or None when the target is settled, claimed or gone."""
        now = self._clock.now()
        claimed = []

        def _apply(reminder: ReminderBase) -> ReminderBase:
            updated = claim(reminder, target, now, lease)
            if updated is None:
                return reminder
            claimed.append(updated)
            return updated

        self.update(owner, reminder_id, _apply)
        return claimed[0] if claimed else None

    def mark_skipped(self, owner: str, reminder_id: str, targets: Iterable[str]) -> Optional[ReminderBase]:
        targets = list(targets)
        return self.update(owner, reminder_id, lambda r: mark_skipped(r, targets))

    def mark_pre_reminders_sent(self, owner: str, reminder_id: str) -> Optional[ReminderBase]:
        """
        Every active lead target -> sent; main untouched. A reminder without a
        cycle gets one first, so the next tick does not rebuild the statuses
        and send the leads again.
        """
        now = self._clock.now()

        def _apply(reminder: ReminderBase) -> ReminderBase:
            if not has_cycle(reminder):
                reminder = start_cycle(reminder, now, self._grace)
            for tag in reminder.pre_reminder_offsets:
                reminder = mark_sent(reminder, tag, now)
            return reminder

        return self.update(owner, reminder_id, _apply)
