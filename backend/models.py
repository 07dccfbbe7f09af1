"""
models.py
─────────
Pydantic data models for reminders and their delivery status.

A reminder is a tagged variant keyed by `schedule_mode`: a DayOfWeekReminder
carries `day`, a SpecificDateReminder carries `date`, and the inactive key is
never present.
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

DAY_LABELS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
PRE_REMINDER_TAGS = ("30m", "1h", "1d", "3d", "1w")
DEFAULT_PRE_REMINDERS = ["1h", "1d", "3d", "1w"]   # 30m is opt-in
MAIN = "main"

MANUAL_OWNER = "__manual__"

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_DAY_ALIASES = {label.lower(): label for label in DAY_LABELS}
_DAY_ALIASES.update({label[:3].lower(): label for label in DAY_LABELS})


def canonical_day(value: str) -> Optional[str]:
    """'sun', 'SUNDAY', 'Sunday' -> 'Sunday'; None when unknown."""
    return _DAY_ALIASES.get(str(value).strip().lower())


def new_reminder_id() -> str:
    return f"reminder-{uuid.uuid4().hex[:12]}"


class DeliveryStatus(BaseModel):
    sent: bool = False
    sent_at: Optional[datetime] = None
    failed: bool = False
    skipped: bool = False
    retries: int = 0
    last_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    claimed_at: Optional[datetime] = None    # a send is in flight since then

    @property
    def settled(self) -> bool:
        """Nothing more will be sent for this occurrence."""
        return self.sent or self.skipped


class RecurringStatus(BaseModel):
    last_completed: Optional[datetime] = None


class ReminderBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_reminder_id)
    time: str                                            # "HH:MM"
    duration_minutes: int = 45
    type: Literal["one-time", "recurring"] = "one-time"
    pre_reminder_offsets: List[str] = Field(default_factory=lambda: list(DEFAULT_PRE_REMINDERS))

    main_status: DeliveryStatus = Field(default_factory=DeliveryStatus)
    pre_reminder_status: Dict[str, DeliveryStatus] = Field(default_factory=dict)
    recurring_status: RecurringStatus = Field(default_factory=RecurringStatus)

    # Free-form, carried through untouched
    title: Optional[str] = None
    notes: str = ""
    category_id: Optional[str] = None
    buffer_minutes: Optional[int] = None
    client_name: str = ""
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("time", mode="before")
    @classmethod
    def _check_time(cls, value: Any) -> str:
        match = _TIME_RE.match(str(value).strip()) if value is not None else None
        if not match:
            raise ValueError(f"Invalid time format: {value!r}. Must be HH:MM")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _check_duration(cls, value: Any) -> int:
        if value is None or value == "":
            return 45
        try:
            minutes = math.ceil(float(value))
        except (TypeError, ValueError, OverflowError):
            raise ValueError(f"Invalid duration: {value!r}. Must be a number of minutes") from None
        return max(1, minutes)

    @field_validator("pre_reminder_offsets", mode="before")
    @classmethod
    def _check_offsets(cls, value: Any) -> List[str]:
        if value is None or value == []:
            return list(DEFAULT_PRE_REMINDERS)
        if not isinstance(value, (list, tuple)):
            raise ValueError("pre_reminder_offsets must be a list")
        tags = [str(tag) for tag in value]
        invalid = [tag for tag in tags if tag not in PRE_REMINDER_TAGS]
        if invalid:
            raise ValueError(
                f"Invalid pre-reminder values: {', '.join(invalid)}. "
                f"Must be one of: {', '.join(PRE_REMINDER_TAGS)}"
            )
        if len(set(tags)) != len(tags):
            raise ValueError("pre_reminder_offsets contains duplicate values")
        return tags

    # ── Status access ─────────────────────────────────────────────────────────

    def targets(self) -> List[str]:
        """'main' followed by every active lead tag."""
        return [MAIN, *self.pre_reminder_offsets]

    def status_for(self, target: str) -> DeliveryStatus:
        if target == MAIN:
            return self.main_status
        return self.pre_reminder_status.get(target) or DeliveryStatus()

    def set_status(self, target: str, status: DeliveryStatus) -> None:
        if target == MAIN:
            self.main_status = status
        else:
            self.pre_reminder_status[target] = status

    @property
    def occurrence(self) -> Optional[datetime]:
        """Occurrence instant of the current cycle, once initialized."""
        return self.main_status.scheduled_for


class DayOfWeekReminder(ReminderBase):
    schedule_mode: Literal["day-of-week"] = "day-of-week"
    day: str

    @field_validator("day", mode="before")
    @classmethod
    def _check_day(cls, value: Any) -> str:
        label = canonical_day(value) if value is not None else None
        if label is None:
            raise ValueError(f"Invalid day: {value!r}. Must be one of: {', '.join(DAY_LABELS)}")
        return label


class SpecificDateReminder(ReminderBase):
    schedule_mode: Literal["specific-date"] = "specific-date"
    date: str                                            # "YYYY-MM-DD"

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        if not _DATE_RE.match(text):
            raise ValueError(f"Invalid date format: {value!r}. Must be YYYY-MM-DD")
        try:
            datetime.strptime(text, "%Y-%m-%d")
        except ValueError:
            raise ValueError(f"Invalid date: {value!r}. Must be a valid calendar date") from None
        return text


Reminder = Annotated[Union[DayOfWeekReminder, SpecificDateReminder], Field(discriminator="schedule_mode")]

_reminder_adapter = TypeAdapter(Reminder)


def _normalize_row(data: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(data)
    mode = row.get("schedule_mode")
    if not mode:
        mode = "specific-date" if row.get("date") else "day-of-week"
        row["schedule_mode"] = mode
    # The inactive schedule key must not survive as an extra field
    row.pop("date" if mode == "day-of-week" else "day", None)
    if row.get("type") in (None, ""):
        row.pop("type", None)
    return row


def parse_reminder(data: Union[Dict[str, Any], ReminderBase]) -> Union[DayOfWeekReminder, SpecificDateReminder]:
    """Validate one raw record. Raises pydantic.ValidationError."""
    if isinstance(data, ReminderBase):
        data = data.model_dump()
    return _reminder_adapter.validate_python(_normalize_row(data))


def dump_reminder(reminder: ReminderBase) -> Dict[str, Any]:
    return reminder.model_dump(mode="json")


class ReminderPatch(BaseModel):
    """Out-of-band edits that never touch schedule identity or statuses."""
    notes: Optional[str] = None
    category_id: Optional[str] = None
    buffer_minutes: Optional[int] = None
    client_name: Optional[str] = None
    completed_at: Optional[datetime] = None


class SendReminderRequest(BaseModel):
    reminder_id: str


class SaveRemindersRequest(BaseModel):
    reminders: List[Dict[str, Any]]
