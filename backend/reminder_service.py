"""
reminder_service.py
───────────────────
Owner-facing edits: saving a contact's reminder list and out-of-band patches.

Saving validates every incoming reminder first and rejects the whole list on
any error. A new reminder starts its first cycle; an existing one keeps its
stored statuses unless its schedule identity changed, in which case the cycle
restarts from scratch.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from logger import logger
from models import ReminderBase, ReminderPatch, parse_reminder
from status import schedule_changed, start_cycle
from storage import RecordStore

_STATUS_FIELDS = ("main_status", "pre_reminder_status", "recurring_status")


class ReminderValidationError(Exception):
    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__(f"{len(errors)} invalid reminder(s)")
        self.errors = errors


def validate_payload(payload: List[Dict[str, Any]]) -> List[ReminderBase]:
    reminders, errors = [], []
    for index, raw in enumerate(payload):
        if not isinstance(raw, dict):
            errors.append({"index": index, "id": None, "errors": ["Reminder must be an object"]})
            continue
        # Statuses are owned by the server; whatever the client echoes back is ignored
        cleaned = {k: v for k, v in raw.items() if k not in _STATUS_FIELDS}
        try:
            reminders.append(parse_reminder(cleaned))
        except ValidationError as e:
            errors.append({
                "index": index,
                "id": raw.get("id"),
                "errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            })
    if errors:
        raise ReminderValidationError(errors)
    return reminders


def merge_reminder(existing: Optional[ReminderBase], incoming: ReminderBase, now: datetime, grace: timedelta) -> ReminderBase:
    if existing is None:
        if incoming.created_at is None:
            incoming = incoming.model_copy(update={"created_at": now})
        return start_cycle(incoming, now, grace)

    if schedule_changed(existing, incoming):
        logger.info(f"Reminder {incoming.id} changed schedule; resetting delivery status")
        return start_cycle(incoming, now, grace)

    return incoming.model_copy(update={
        "created_at":          incoming.created_at or existing.created_at,
        "main_status":         existing.main_status,
        "pre_reminder_status": existing.pre_reminder_status,
        "recurring_status":    existing.recurring_status,
    })


def save_reminders(
    store: RecordStore,
    owner: str,
    payload: List[Dict[str, Any]],
    now: datetime,
    grace: timedelta = timedelta(minutes=5),
) -> List[ReminderBase]:
    """Replace the owner's reminders. Raises ReminderValidationError."""
    incoming = validate_payload(payload)

    def _merge(stored: List[ReminderBase]) -> List[ReminderBase]:
        by_id = {r.id: r for r in stored}
        return [merge_reminder(by_id.get(r.id), r, now, grace) for r in incoming]

    return store.transact(owner, _merge)


def patch_reminder(store: RecordStore, owner: str, reminder_id: str, patch: ReminderPatch) -> Optional[ReminderBase]:
    return store.patch_one(owner, reminder_id, patch.model_dump(exclude_none=True))
