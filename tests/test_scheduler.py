from __future__ import annotations

import threading

from conftest import GRACE, PHONE, at, make_reminder
from dispatch import Dispatcher
from messaging import MessagingError, StubMessagingClient, target_id
from models import MANUAL_OWNER
from status import start_cycle
from templates import StaticTemplateSource


class BlockingClient(StubMessagingClient):
    """send() waits until `release` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = threading.Event()
        self.release = threading.Event()

    def send(self, target, text):
        self.started.set()
        self.release.wait(10)
        super().send(target, text)


class FailingClient(StubMessagingClient):
    def __init__(self, failing_prefix, **kwargs):
        super().__init__(**kwargs)
        self.failing_prefix = failing_prefix

    def send(self, target, text):
        if target_id(target).startswith(self.failing_prefix):
            raise MessagingError("boom")
        super().send(target, text)


class ManualSendOnReady(StubMessagingClient):
    """Runs `on_ready` once, from inside the next is_ready() check."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.on_ready = None

    def is_ready(self):
        hook, self.on_ready = self.on_ready, None
        if hook is not None:
            hook()
        return super().is_ready()


def _dispatcher(store, client, clock):
    return Dispatcher(store, client, StaticTemplateSource("Reminder {time}"), clock)


def test_sunday_reminder_end_to_end(store, clock, messenger, dispatcher, make_scheduler):
    store.save(PHONE, [make_reminder()])
    scheduler = make_scheduler(dispatcher)

    report = scheduler.tick()
    assert report.initialized == 1
    assert report.due == 0
    assert messenger.sent == []

    clock.set(at(2026, 10, 17, 10, 0))
    report = scheduler.tick()
    assert report.sent == 1
    assert store.get(PHONE, "r1").pre_reminder_status["1d"].sent

    # Nothing new on a repeated tick
    assert scheduler.tick().sent == 0
    assert len(messenger.sent) == 1

    clock.set(at(2026, 10, 18, 10, 0))
    assert scheduler.tick().sent == 1
    assert store.get(PHONE, "r1").main_status.sent
    assert len(messenger.sent) == 2


def test_overlapping_tick_does_nothing(store, clock, make_scheduler):
    client = BlockingClient()
    scheduler = make_scheduler(_dispatcher(store, client, clock))
    store.save(PHONE, [make_reminder()])
    scheduler.tick()
    clock.set(at(2026, 10, 17, 10, 0))

    reports = []
    worker = threading.Thread(target=lambda: reports.append(scheduler.tick()))
    worker.start()
    try:
        assert client.started.wait(5)
        second = scheduler.tick()
        assert second.overlapped
        assert second.sent == 0
    finally:
        client.release.set()
        worker.join(5)

    assert reports[0].sent == 1
    assert scheduler.tick().sent == 0
    assert len(client.sent) == 1


def test_client_not_ready_defers_delivery(store, clock, messenger, dispatcher, make_scheduler):
    store.save(PHONE, [make_reminder()])
    scheduler = make_scheduler(dispatcher)
    scheduler.tick()

    messenger.ready = False
    clock.set(at(2026, 10, 17, 10, 0))
    report = scheduler.tick()
    assert report.not_ready
    assert report.due == 1
    status = store.get(PHONE, "r1").pre_reminder_status["1d"]
    assert not status.sent and not status.failed

    messenger.ready = True
    assert scheduler.tick().sent == 1


def test_timed_out_delivery_is_marked_failed_and_retried(store, clock, make_scheduler):
    client = BlockingClient()
    scheduler = make_scheduler(_dispatcher(store, client, clock), delivery_timeout=0.2)
    store.save(PHONE, [make_reminder()])
    scheduler.tick()
    clock.set(at(2026, 10, 17, 10, 0))

    try:
        report = scheduler.tick()
    finally:
        client.release.set()

    assert report.failed == 1
    status = store.get(PHONE, "r1").pre_reminder_status["1d"]
    assert status.failed
    assert not status.sent
    assert status.retries == 1
    assert "timed out" in status.last_error
    assert status.claimed_at is None

    # Retried once the backoff has passed
    assert scheduler.tick().sent == 0
    clock.advance(minutes=1)
    assert scheduler.tick().sent == 1
    assert store.get(PHONE, "r1").pre_reminder_status["1d"].sent


def test_one_failing_contact_does_not_block_others(store, clock, make_scheduler):
    client = FailingClient("0501111111")
    scheduler = make_scheduler(_dispatcher(store, client, clock))
    store.save("0501111111", [make_reminder()])
    store.save("0502222222", [make_reminder()])
    scheduler.tick()

    clock.set(at(2026, 10, 17, 10, 0))
    report = scheduler.tick()

    assert report.sent == 1
    assert report.failed == 1
    assert store.get("0501111111", "r1").pre_reminder_status["1d"].failed
    assert store.get("0502222222", "r1").pre_reminder_status["1d"].sent


def test_recurring_reminder_rolls_over(store, clock, messenger, dispatcher, make_scheduler):
    clock.set(at(2026, 10, 18, 8, 0))
    store.save(PHONE, [make_reminder(type="recurring", pre_reminder_offsets=["1h"])])
    scheduler = make_scheduler(dispatcher)
    scheduler.tick()

    clock.set(at(2026, 10, 18, 9, 0))
    assert scheduler.tick().sent == 1
    clock.set(at(2026, 10, 18, 10, 0))
    report = scheduler.tick()
    assert report.sent == 1
    assert report.reset == 0

    clock.set(at(2026, 10, 18, 10, 1))
    assert scheduler.tick().reset == 1

    reminder = store.get(PHONE, "r1")
    assert reminder.occurrence == at(2026, 10, 25, 10, 0)
    assert reminder.recurring_status.last_completed == at(2026, 10, 18, 10, 0)
    assert not reminder.main_status.sent
    assert not reminder.pre_reminder_status["1h"].sent
    assert len(messenger.sent) == 2


def test_only_the_closest_lead_is_sent_after_downtime(store, clock, messenger, dispatcher, make_scheduler):
    reminder = make_reminder(date="2026-10-20", pre_reminder_offsets=["1h", "1d"])
    store.save(PHONE, [start_cycle(reminder, clock.now(), GRACE)])
    scheduler = make_scheduler(dispatcher)

    clock.set(at(2026, 10, 20, 9, 30))
    report = scheduler.tick()

    assert report.sent == 1
    assert report.skipped == 1
    stored = store.get(PHONE, "r1")
    assert stored.pre_reminder_status["1h"].sent
    assert stored.pre_reminder_status["1d"].skipped
    assert len(messenger.sent) == 1


def test_missed_occurrence_is_skipped_not_sent(store, clock, messenger, dispatcher, make_scheduler):
    reminder = make_reminder(date="2026-10-20", pre_reminder_offsets=["1h"])
    store.save(PHONE, [start_cycle(reminder, clock.now(), GRACE)])
    scheduler = make_scheduler(dispatcher)

    clock.set(at(2026, 10, 20, 10, 10))
    report = scheduler.tick()

    assert report.sent == 0
    assert report.skipped == 2
    stored = store.get(PHONE, "r1")
    assert stored.main_status.skipped
    assert stored.pre_reminder_status["1h"].skipped
    assert messenger.sent == []


def test_manual_owner_is_ignored(store, clock, messenger, dispatcher, make_scheduler):
    store.save(MANUAL_OWNER, [make_reminder(date="2026-10-17", time="09:00", pre_reminder_offsets=["1h"])])

    report = make_scheduler(dispatcher).tick()

    assert report.evaluated == 0
    assert messenger.sent == []


def test_finished_one_time_reminders_are_purged(store, clock, dispatcher, make_scheduler):
    store.save(PHONE, [make_reminder(date="2026-10-17", time="09:00", pre_reminder_offsets=["30m"])])
    scheduler = make_scheduler(dispatcher, purge_expired=True, purge_after=180)

    report = scheduler.tick()
    assert report.sent == 1
    assert report.purged == 0

    clock.advance(minutes=3)
    assert scheduler.tick().purged == 1
    assert store.load(PHONE) == []


def test_delivery_events(store, clock, dispatcher, make_scheduler):
    events = []
    store.save(PHONE, [make_reminder()])
    scheduler = make_scheduler(dispatcher, on_event=events.append)
    scheduler.tick()

    clock.set(at(2026, 10, 17, 10, 0))
    scheduler.tick()

    assert [(e.owner, e.reminder_id, e.target, e.ok) for e in events] == [(PHONE, "r1", "1d", True)]


def test_start_and_stop(store, dispatcher, make_scheduler):
    scheduler = make_scheduler(dispatcher)
    scheduler.start()
    assert scheduler.running
    scheduler.stop(timeout=5)
    assert not scheduler.running
    assert scheduler.status()["running"] is False


def test_manual_send_during_a_tick_is_not_repeated(store, clock, make_scheduler):
    client = ManualSendOnReady()
    dispatcher = _dispatcher(store, client, clock)
    scheduler = make_scheduler(dispatcher)
    store.save(PHONE, [make_reminder()])
    scheduler.tick()

    # The manual send lands after the tick computed its due set
    clock.set(at(2026, 10, 17, 10, 0))
    client.on_ready = lambda: dispatcher.send_now(PHONE, "r1")
    report = scheduler.tick()

    assert report.due == 1
    assert report.superseded == 1
    assert report.sent == 0
    assert len(client.sent) == 1
    assert store.get(PHONE, "r1").pre_reminder_status["1d"].sent


def test_two_schedulers_on_one_store_send_once(store, clock, make_scheduler):
    first_client = BlockingClient()
    second_client = StubMessagingClient()
    first = make_scheduler(_dispatcher(store, first_client, clock))
    second = make_scheduler(_dispatcher(store, second_client, clock))
    store.save(PHONE, [make_reminder()])
    first.tick()
    clock.set(at(2026, 10, 17, 10, 0))

    reports = []
    worker = threading.Thread(target=lambda: reports.append(first.tick()))
    worker.start()
    try:
        assert first_client.started.wait(5)
        other = second.tick()
        assert not other.overlapped
        assert other.superseded == 1
        assert other.sent == 0
    finally:
        first_client.release.set()
        worker.join(5)

    assert reports[0].sent == 1
    assert second.tick().due == 0
    assert len(first_client.sent) == 1
    assert second_client.sent == []


def test_manual_send_before_the_first_tick_is_not_repeated(store, clock, messenger, dispatcher, make_scheduler):
    store.save(PHONE, [make_reminder()])
    dispatcher.send_now(PHONE, "r1")

    stored = store.get(PHONE, "r1")
    assert stored.occurrence == at(2026, 10, 18, 10, 0)
    assert stored.pre_reminder_status["1d"].sent

    scheduler = make_scheduler(dispatcher)
    assert scheduler.tick().initialized == 0
    clock.set(at(2026, 10, 17, 10, 0))
    assert scheduler.tick().due == 0
    assert len(messenger.sent) == 1


def test_failed_target_waits_for_backoff_then_gives_up(store, clock, make_scheduler):
    client = FailingClient(PHONE)
    scheduler = make_scheduler(_dispatcher(store, client, clock), max_retries=2, retry_backoff=60)
    store.save(PHONE, [make_reminder()])
    scheduler.tick()

    clock.set(at(2026, 10, 17, 10, 0))
    assert scheduler.tick().failed == 1

    clock.advance(seconds=30)
    report = scheduler.tick()
    assert report.due == 0
    assert report.failed == 0

    clock.advance(seconds=30)
    assert scheduler.tick().failed == 1
    status = store.get(PHONE, "r1").pre_reminder_status["1d"]
    assert status.retries == 2
    assert status.failed
    assert status.skipped

    clock.advance(minutes=5)
    assert scheduler.tick().due == 0
    assert store.get(PHONE, "r1").pre_reminder_status["1d"].retries == 2


def test_past_manual_reminders_are_purged(store, clock, dispatcher, make_scheduler):
    store.save(MANUAL_OWNER, [
        make_reminder(id="old", date="2026-10-17", time="08:00", pre_reminder_offsets=["1h"]),
        make_reminder(id="new", date="2026-10-20", time="08:00", pre_reminder_offsets=["1h"]),
    ])
    scheduler = make_scheduler(dispatcher, purge_expired=True, purge_after=180)

    assert scheduler.tick().purged == 1
    assert [r.id for r in store.load(MANUAL_OWNER)] == ["new"]
