"""
storage.py
──────────
JSON file record store for reminders, keyed by owner (the contact's phone
number, or MANUAL_OWNER for appointments without one):

    { "<owner>": [ {reminder}, ... ], ... }

Locking:
  - one lock per owner serializes read-modify-write on that owner's records
  - one file lock serializes disk access; a write re-reads the file and only
    replaces the owner's own key, so owners never clobber each other
  - writes go to a tmp file first, then os.replace() over the old one
"""

import json
import os
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple


from logger import logger
from models import ReminderBase, dump_reminder, parse_reminder


class RecordStore(Protocol):
    def owners(self) -> List[str]: ...

    def load(self, owner: str) -> List[ReminderBase]: ...

    def load_all(self) -> Dict[str, List[ReminderBase]]: ...

    def get(self, owner: str, reminder_id: str) -> Optional[ReminderBase]: ...

    def save(self, owner: str, reminders: List[ReminderBase]) -> List[ReminderBase]: ...

    def patch_one(self, owner: str, reminder_id: str, patch: Dict[str, Any]) -> Optional[ReminderBase]: ...

    def update(
        self, owner: str, reminder_id: str, fn: Callable[[ReminderBase], ReminderBase]
    ) -> Optional[ReminderBase]: ...

    def delete(self, owner: str, reminder_ids: Iterable[str]) -> int: ...

    def transact(
        self, owner: str, fn: Callable[[List[ReminderBase]], List[ReminderBase]]
    ) -> List[ReminderBase]: ...


def _read(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError:
            logger.error(f"Reminder file {path} is not valid JSON; treating it as empty")
            return {}
    return data if isinstance(data, dict) else {}


def _write(path: str, data: Dict[str, Any]) -> None:
    """Atomic write: write to a tmp file then rename (os.replace)."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


def _split_rows(owner: str, rows: Any) -> Tuple[List[ReminderBase], List[Any]]:
    """(valid reminders, raw rows that failed validation)"""
    if not isinstance(rows, list):
        return [], []
    reminders, invalid = [], []
    for row in rows:
        try:
            reminders.append(parse_reminder(row))
        except (ValueError, TypeError) as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.warning(f"Skipping invalid reminder {row_id} for {owner}: {e}")
            invalid.append(row)
    return reminders, invalid


def _parse_rows(owner: str, rows: Any) -> List[ReminderBase]:
    return _split_rows(owner, rows)[0]


class JsonReminderStore:
    def __init__(self, path: str):
        self._path        = path
        self._file_lock   = threading.Lock()
        self._owner_locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    @property
    def path(self) -> str:
        return self._path

    def owner_lock(self, owner: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._owner_locks.get(owner)
            if lock is None:
                lock = self._owner_locks[owner] = threading.RLock()
            return lock

    # ── Raw access ────────────────────────────────────────────────────────────

    def _read_owner(self, owner: str) -> List[Any]:
        with self._file_lock:
            rows = _read(self._path).get(owner, [])
        return rows if isinstance(rows, list) else []

    def _write_owner(self, owner: str, reminders: List[ReminderBase], extra_rows: Iterable[Any] = ()) -> None:
        with self._file_lock:
            data = _read(self._path)
            data[owner] = [dump_reminder(r) for r in reminders] + list(extra_rows)
            _write(self._path, data)

    # ── Queries ───────────────────────────────────────────────────────────────

    def owners(self) -> List[str]:
        with self._file_lock:
            return list(_read(self._path).keys())

    def load(self, owner: str) -> List[ReminderBase]:
        return _parse_rows(owner, self._read_owner(owner))

    def load_all(self) -> Dict[str, List[ReminderBase]]:
        with self._file_lock:
            data = _read(self._path)
        return {owner: _parse_rows(owner, rows) for owner, rows in data.items()}

    def get(self, owner: str, reminder_id: str) -> Optional[ReminderBase]:
        for reminder in self.load(owner):
            if reminder.id == reminder_id:
                return reminder
        return None

    # ── Mutations ─────────────────────────────────────────────────────────────

    def save(self, owner: str, reminders: List[ReminderBase]) -> List[ReminderBase]:
        """Replace the owner's whole reminder list."""
        with self.owner_lock(owner):
            self._write_owner(owner, reminders)
        logger.info(f"Saved {len(reminders)} reminder(s) for {owner}")
        return reminders

    def transact(
        self,
        owner: str,
        fn: Callable[[List[ReminderBase]], List[ReminderBase]],
    ) -> List[ReminderBase]:
        """Read-modify-write of the owner's whole list under the owner lock."""
        with self.owner_lock(owner):
            reminders = fn(self.load(owner))
            self._write_owner(owner, reminders)
        logger.info(f"Saved {len(reminders)} reminder(s) for {owner}")
        return reminders

    def update(
        self,
        owner: str,
        reminder_id: str,
        fn: Callable[[ReminderBase], ReminderBase],
    ) -> Optional[ReminderBase]:
        """
        Atomic read-modify-write of one reminder. fn receives the stored record
        and returns its replacement; returns None if the reminder is gone.
        """
        with self.owner_lock(owner):
            reminders, invalid = _split_rows(owner, self._read_owner(owner))
            for index, reminder in enumerate(reminders):
                if reminder.id == reminder_id:
                    break
            else:
                logger.warning(f"Reminder {reminder_id} not found for {owner}")
                return None

            updated = fn(reminder)
            reminders[index] = updated
            # Rows that failed validation stay on disk as they were
            self._write_owner(owner, reminders, invalid)
        logger.debug(f"Updated reminder {reminder_id} for {owner}")
        return updated

    def patch_one(self, owner: str, reminder_id: str, patch: Dict[str, Any]) -> Optional[ReminderBase]:
        """Shallow field patch; status fields change only if the patch names them."""
        def _apply(reminder: ReminderBase) -> ReminderBase:
            data = reminder.model_dump()
            data.update(patch)
            return parse_reminder(data)

        return self.update(owner, reminder_id, _apply)

    def delete(self, owner: str, reminder_ids: Iterable[str]) -> int:
        doomed = set(reminder_ids)
        with self.owner_lock(owner):
            reminders, invalid = _split_rows(owner, self._read_owner(owner))
            kept = [r for r in reminders if r.id not in doomed]
            removed = len(reminders) - len(kept)
            if removed:
                self._write_owner(owner, kept, invalid)
        return removed
