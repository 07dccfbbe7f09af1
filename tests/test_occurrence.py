from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import GRACE, SATURDAY_9AM, at, make_reminder
from occurrence import due_targets, lead_due_at, next_occurrence, stale_targets
from status import initialize_cycle, mark_failed, mark_sent, start_cycle


def test_weekly_references_give_occurrences_seven_days_apart():
    reminder = make_reminder(day="Monday", time="10:00")
    previous = next_occurrence(reminder, SATURDAY_9AM)
    for week in range(1, 5):
        current = next_occurrence(reminder, SATURDAY_9AM + timedelta(days=7 * week))
        assert current - previous == timedelta(days=7)
        assert current.weekday() == 0
        previous = current


def test_exact_match_returns_the_reference():
    reminder = make_reminder(day="Saturday", time="09:00")
    assert next_occurrence(reminder, SATURDAY_9AM) == SATURDAY_9AM


def test_later_time_same_weekday_moves_to_next_week():
    reminder = make_reminder(day="Saturday", time="08:59")
    assert next_occurrence(reminder, SATURDAY_9AM) == at(2026, 10, 24, 8, 59)


def test_recurring_specific_date_in_the_past_is_expired():
    reminder = make_reminder(date="2026-10-01", type="recurring")
    assert next_occurrence(reminder, SATURDAY_9AM) is None


def test_one_time_specific_date_in_the_past_keeps_its_instant():
    reminder = make_reminder(date="2026-10-01")
    assert next_occurrence(reminder, SATURDAY_9AM) == at(2026, 10, 1, 10, 0)


def test_naive_reference_rejected():
    with pytest.raises(ValueError):
        next_occurrence(make_reminder(), datetime(2026, 10, 17, 9, 0))


def test_one_hour_lead_due_from_thirteen_hundred():
    reminder = make_reminder(date="2026-10-20", time="14:00", pre_reminder_offsets=["1h"])
    occurrence = at(2026, 10, 20, 14, 0)
    assert lead_due_at(occurrence, "1h") == at(2026, 10, 20, 13, 0)

    reminder = initialize_cycle(reminder, occurrence, at(2026, 10, 20, 12, 0), GRACE)
    assert due_targets(reminder, at(2026, 10, 20, 12, 59)) == []
    assert due_targets(reminder, at(2026, 10, 20, 13, 0)) == [("1h", at(2026, 10, 20, 13, 0))]


def test_lead_is_subtracted_in_absolute_time_across_dst_end():
    # Israel leaves summer time on Sunday 25 October 2026
    occurrence = at(2026, 10, 25, 10, 0)
    lead = lead_due_at(occurrence, "1d")
    assert occurrence.astimezone(timezone.utc) - lead.astimezone(timezone.utc) == timedelta(hours=24)
    assert lead.hour == 11


def test_sunday_lead_created_saturday_morning():
    reminder = start_cycle(make_reminder(), SATURDAY_9AM, GRACE)
    assert reminder.occurrence == at(2026, 10, 18, 10, 0)
    assert due_targets(reminder, SATURDAY_9AM) == []
    assert due_targets(reminder, at(2026, 10, 17, 10, 0)) == [("1d", at(2026, 10, 17, 10, 0))]


def test_due_targets_are_idempotent():
    reminder = start_cycle(make_reminder(), SATURDAY_9AM, GRACE)
    now = at(2026, 10, 17, 10, 0)
    assert due_targets(reminder, now) == due_targets(reminder, now)

    reminder = mark_sent(reminder, "1d", now)
    assert due_targets(reminder, now) == []


def test_leads_go_stale_once_the_occurrence_is_reached():
    reminder = start_cycle(make_reminder(pre_reminder_offsets=["1h"]), SATURDAY_9AM, GRACE)
    occurrence = reminder.occurrence

    assert stale_targets(reminder, occurrence - timedelta(minutes=1), GRACE) == []
    assert stale_targets(reminder, occurrence, GRACE) == ["1h"]
    assert [t for t, _ in due_targets(reminder, occurrence)] == ["main"]
    assert stale_targets(reminder, occurrence + timedelta(minutes=6), GRACE) == ["1h", "main"]


def test_failed_target_waits_out_the_backoff():
    backoff = timedelta(minutes=1)
    due_at = at(2026, 10, 17, 10, 0)
    reminder = start_cycle(make_reminder(), SATURDAY_9AM, GRACE)
    reminder = mark_failed(reminder, "1d", "boom", due_at)

    assert due_targets(reminder, due_at + timedelta(seconds=59), backoff) == []
    assert due_targets(reminder, due_at + backoff, backoff) == [("1d", due_at)]
    # Without a backoff the retry is immediate
    assert due_targets(reminder, due_at) == [("1d", due_at)]
