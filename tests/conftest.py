from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from clock import ManualClock
from dispatch import Dispatcher
from messaging import StubMessagingClient
from models import parse_reminder
from scheduler import ReminderScheduler
from storage import JsonReminderStore
from templates import StaticTemplateSource

TZ = ZoneInfo("Asia/Jerusalem")
PHONE = "0501234567"
GRACE = timedelta(minutes=5)


def at(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=TZ)


# Saturday 17 October 2026, 09:00
SATURDAY_9AM = at(2026, 10, 17, 9, 0)


def make_reminder(**fields):
    data = {"id": "r1", "time": "10:00", "day": "Sunday", "pre_reminder_offsets": ["1d"]}
    data.update(fields)
    return parse_reminder(data)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(SATURDAY_9AM)


@pytest.fixture
def store(tmp_path) -> JsonReminderStore:
    return JsonReminderStore(str(tmp_path / "reminders.json"))


@pytest.fixture
def messenger() -> StubMessagingClient:
    return StubMessagingClient()


@pytest.fixture
def dispatcher(store, messenger, clock) -> Dispatcher:
    return Dispatcher(store, messenger, StaticTemplateSource("Hi {name}, see you {day} at {time}"), clock)


@pytest.fixture
def make_scheduler(store, clock):
    def _make(dispatcher: Dispatcher, **kwargs) -> ReminderScheduler:
        kwargs.setdefault("interval", 0.05)
        kwargs.setdefault("delivery_timeout", 5.0)
        return ReminderScheduler(store, dispatcher, clock, **kwargs)

    return _make
