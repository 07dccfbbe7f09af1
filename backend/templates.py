"""
templates.py
────────────
Reminder message templates.

Placeholders: {name}, {day}, {time}, {date}. Substitution is literal; a
placeholder whose value is missing or empty stays in the text as-is.
"""

import json
import os
from datetime import datetime
from typing import Mapping, Optional, Protocol

from logger import logger
from models import DAY_LABELS, ReminderBase

DEFAULT_TEMPLATE = (
    "Hi {name}, this is a reminder of your appointment on {day} at {time}.\n"
    "See you soon!"
)

PLACEHOLDERS = ("name", "day", "time", "date")

_MONTHS = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def format_template(template: str, values: Mapping[str, Optional[str]]) -> str:
    formatted = template
    for key in PLACEHOLDERS:
        value = values.get(key)
        if value:
            formatted = formatted.replace("{" + key + "}", str(value))
    return formatted


def describe_day(reminder: ReminderBase, occurrence: Optional[datetime]) -> str:
    """'Sunday, 18/10' for the occurrence; bare weekday or date when unknown."""
    if occurrence is None:
        return getattr(reminder, "day", None) or getattr(reminder, "date", "")
    weekday = DAY_LABELS[(occurrence.weekday() + 1) % 7]
    return f"{weekday}, {occurrence.day:02d}/{occurrence.month:02d}"


def describe_date(instant: datetime) -> str:
    return f"{instant.day} {_MONTHS[instant.month - 1]} {instant.year}"


class TemplateSource(Protocol):
    def load(self) -> str: ...


class StaticTemplateSource:
    def __init__(self, template: str = DEFAULT_TEMPLATE):
        self._template = template

    def load(self) -> str:
        return self._template


class SettingsFileTemplateSource:
    """Reads `reminder_template` from the settings JSON file on every call."""

    def __init__(self, path: str, default: str = DEFAULT_TEMPLATE):
        self._path    = path
        self._default = default

    def load(self) -> str:
        if not os.path.exists(self._path):
            return self._default
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                settings = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Settings file {self._path} is not valid JSON ({e}); using default template")
            return self._default
        template = settings.get("reminder_template") if isinstance(settings, dict) else None
        return template or self._default
