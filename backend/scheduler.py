"""
scheduler.py
────────────
The reminder tick loop.

One background thread wakes every `interval` seconds and runs tick():

  1. snapshot every owner's reminders
  2. re-read each reminder, start its cycle if it has none, skip stale
     targets, collect the targets that are due
  3. if anything is due and the messaging client is ready, deliver them on a
     thread pool, each bounded by `delivery_timeout`
  4. record sent / failed per target
  5. roll recurring reminders over to their next cycle
  6. optionally purge finished one-time reminders

Ticks never overlap: a tick that finds another one in flight does nothing.
Each target is claimed in the store right before it is sent; one that a
manual send or a second scheduler already settled or claimed is dropped.
A failing target is retried after `retry_backoff` and given up after
`max_retries` attempts.
stop() lets an in-flight tick finish.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from clock import Clock
from dispatch import Dispatcher
from logger import logger
from models import MAIN, MANUAL_OWNER, ReminderBase
from occurrence import due_targets, next_occurrence, stale_targets
from status import has_cycle, is_cycle_complete, roll_over, start_cycle
from storage import RecordStore


@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    evaluated: int = 0
    initialized: int = 0
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    reset: int = 0
    purged: int = 0
    superseded: int = 0                  # claimed or settled by another sender first
    not_ready: bool = False
    overlapped: bool = False


@dataclass(frozen=True)
class DeliveryEvent:
    owner: str
    reminder_id: str
    target: str
    ok: bool
    error: Optional[str] = None


Pending = Tuple[str, ReminderBase, str]


class ReminderScheduler:
    def __init__(
        self,
        store: RecordStore,
        dispatcher: Dispatcher,
        clock: Clock,
        interval: float = 15.0,
        delivery_timeout: float = 30.0,
        max_workers: int = 4,
        catch_up_grace: float = 300.0,
        purge_expired: bool = False,
        purge_after: float = 180.0,
        max_retries: int = 5,
        retry_backoff: float = 60.0,
        on_event: Optional[Callable[[DeliveryEvent], None]] = None,
    ):
        """
        on_event(DeliveryEvent) is called on the tick thread after every
        delivery attempt has been recorded.
        """
        self._store            = store
        self._dispatcher       = dispatcher
        self._statuses         = dispatcher.statuses
        self._clock            = clock
        self._interval         = interval
        self._delivery_timeout = delivery_timeout
        self._max_workers      = max(1, max_workers)
        self._grace            = timedelta(seconds=catch_up_grace)
        self._purge_expired    = purge_expired
        self._purge_after      = timedelta(seconds=purge_after)
        self._max_retries      = max_retries
        self._retry_backoff    = timedelta(seconds=retry_backoff)
        self._claim_lease      = timedelta(seconds=delivery_timeout)
        self._on_event         = on_event

        self._tick_lock   = threading.Lock()     # single-flight
        self._running     = threading.Event()
        self._wake        = threading.Event()    # cuts the sleep short on stop()
        self._thread: Optional[threading.Thread] = None
        self._last_report: Optional[TickReport] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def start(self) -> None:
        if self._running.is_set():
            logger.warning("Scheduler is already running")
            return
        self._running.set()
        self._wake.clear()
        self._thread = threading.Thread(target=self._tick_loop, daemon=True, name="reminder-scheduler")
        self._thread.start()
        logger.info(
            f"Scheduler started (check interval: {self._interval}s, "
            f"delivery timeout: {self._delivery_timeout}s, workers: {self._max_workers})"
        )

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """No new ticks after this; with wait=True, block until the current one ends."""
        if not self._running.is_set():
            return
        logger.info("Stopping reminder scheduler...")
        self._running.clear()
        self._wake.set()
        if wait:
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
            # A tick started through tick() from another thread
            if self._tick_lock.acquire(timeout=-1 if timeout is None else timeout):
                self._tick_lock.release()
        logger.info("Scheduler stopped")

    def status(self) -> dict:
        report = self._last_report
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "last_tick_at": report.started_at.isoformat() if report else None,
            "last_report": asdict(report) if report else None,
        }

    def _tick_loop(self) -> None:
        while self._running.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in scheduler loop")
            self._wake.wait(timeout=self._interval)

    # ── Tick ──────────────────────────────────────────────────────────────────

    def tick(self) -> TickReport:
        now = self._clock.now()
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running; skipping this one")
            return TickReport(started_at=now, overlapped=True)
        try:
            report = self._run_tick(now)
        finally:
            self._tick_lock.release()
        self._last_report = report
        return report

    def _run_tick(self, now: datetime) -> TickReport:
        report = TickReport(started_at=now)
        snapshot = self._store.load_all()

        pending: List[Pending] = []
        for owner, reminders in snapshot.items():
            if owner == MANUAL_OWNER:
                continue                         # no phone, nothing to send
            for reminder in reminders:
                report.evaluated += 1
                try:
                    pending.extend(self._prepare(owner, reminder.id, now, report))
                except Exception:
                    logger.exception(f"Could not evaluate reminder {reminder.id} for {owner}")

        if pending:
            if self._dispatcher.is_ready():
                self._dispatch(pending, report)
            else:
                report.not_ready = True
                logger.warning(f"Messaging client not ready; {len(pending)} due reminder(s) wait for the next tick")

        for owner, reminders in snapshot.items():
            for reminder in reminders:
                if reminder.type == "recurring":
                    self._roll_over(owner, reminder.id, now, report)

        if self._purge_expired:
            self._purge(now, report)

        report.finished_at = self._clock.now()
        if report.due or report.reset or report.purged:
            logger.info(
                f"Tick: {report.due} due, {report.sent} sent, {report.failed} failed, "
                f"{report.skipped} skipped, {report.reset} reset, {report.purged} purged"
            )
        return report

    def _prepare(self, owner: str, reminder_id: str, now: datetime, report: TickReport) -> List[Pending]:
        # Fresh read: the snapshot may already be stale
        reminder = self._store.get(owner, reminder_id)
        if reminder is None:
            return []

        if not has_cycle(reminder):
            reminder = self._statuses.update(
                owner, reminder_id,
                lambda r: r if has_cycle(r) else start_cycle(r, now, self._grace),
            )
            if reminder is None:
                return []
            report.initialized += 1

        stale = stale_targets(reminder, now, self._grace)
        due = due_targets(reminder, now, self._retry_backoff)

        # Several leads due at once (e.g. after downtime): only the one closest
        # to the occurrence goes out.
        leads = [(target, due_at) for target, due_at in due if target != MAIN]
        if len(leads) > 1:
            keep = max(leads, key=lambda item: item[1])[0]
            stale.extend(target for target, _ in leads if target != keep)
        due = [(target, due_at) for target, due_at in due if target not in stale]

        if stale:
            reminder = self._statuses.mark_skipped(owner, reminder_id, stale)
            report.skipped += len(stale)
            logger.info(f"Skipping stale target(s) {', '.join(stale)} of reminder {reminder_id} for {owner}")
            if reminder is None:
                return []

        report.due += len(due)
        return [(owner, reminder, target) for target, _ in due]

    def _dispatch(self, pending: List[Pending], report: TickReport) -> None:
        # One pool per batch: a hung send keeps its thread but never delays the
        # next batch.
        for start in range(0, len(pending), self._max_workers):
            batch = self._claim(pending[start:start + self._max_workers], report)
            if not batch:
                continue
            pool = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="reminder-send")
            try:
                futures = {
                    pool.submit(self._dispatcher.deliver, owner, reminder, target): (owner, reminder, target)
                    for owner, reminder, target in batch
                }
                wait(futures, timeout=self._delivery_timeout)
                for future, (owner, reminder, target) in futures.items():
                    if not future.done():
                        future.cancel()
                        self._record_failure(
                            owner, reminder, target,
                            TimeoutError(f"Delivery timed out after {self._delivery_timeout}s"), report,
                        )
                    elif future.exception() is not None:
                        self._record_failure(owner, reminder, target, future.exception(), report)
                    else:
                        self._record_success(owner, reminder, target, report)
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

    def _claim(self, batch: List[Pending], report: TickReport) -> List[Pending]:
        """
        Re-check every target against the store right before it is sent. A
        manual send or another scheduler may have settled or claimed it since
        the due set was computed.
        """
        claimed: List[Pending] = []
        for owner, reminder, target in batch:
            fresh = self._statuses.claim(owner, reminder.id, target, self._claim_lease)
            if fresh is None:
                report.superseded += 1
                logger.info(f"{target} reminder {reminder.id} for {owner} was already handled; not sending")
                continue
            claimed.append((owner, fresh, target))
        return claimed

    def _record_success(self, owner: str, reminder: ReminderBase, target: str, report: TickReport) -> None:
        self._statuses.mark_sent(owner, reminder.id, target)
        report.sent += 1
        self._emit(DeliveryEvent(owner=owner, reminder_id=reminder.id, target=target, ok=True))

    def _record_failure(
        self, owner: str, reminder: ReminderBase, target: str, error: BaseException, report: TickReport
    ) -> None:
        updated = self._statuses.mark_failed(owner, reminder.id, target, error, self._max_retries)
        report.failed += 1
        logger.warning(f"REMINDER FAILED: could not send {target} reminder {reminder.id} to {owner} - {error}")
        status = updated.status_for(target) if updated is not None else None
        if status is not None and status.skipped:
            logger.error(f"Giving up on {target} reminder {reminder.id} for {owner} after {status.retries} attempts")
        self._emit(DeliveryEvent(owner=owner, reminder_id=reminder.id, target=target, ok=False, error=str(error)))

    def _emit(self, event: DeliveryEvent) -> None:
        if not self._on_event:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Delivery event callback failed")

    def _roll_over(self, owner: str, reminder_id: str, now: datetime, report: TickReport) -> None:
        current = self._store.get(owner, reminder_id)
        if current is None or roll_over(current, now, self._grace) is None:
            return

        def _apply(reminder: ReminderBase) -> ReminderBase:
            return roll_over(reminder, now, self._grace) or reminder

        updated = self._statuses.update(owner, reminder_id, _apply)
        if updated is not None:
            report.reset += 1
            logger.info(
                f"Recurring reminder {reminder_id} for {owner} rolled over to {updated.occurrence}"
            )

    def _expired(self, owner: str, reminder: ReminderBase, now: datetime) -> bool:
        if reminder.type != "one-time":
            return False
        if owner == MANUAL_OWNER:
            # Never ticked, so no statuses: the occurrence alone decides
            occurrence = reminder.occurrence or next_occurrence(reminder, now)
            return occurrence is not None and occurrence + self._purge_after <= now
        return (
            reminder.occurrence is not None
            and reminder.occurrence + self._purge_after <= now
            and is_cycle_complete(reminder)
        )

    def _purge(self, now: datetime, report: TickReport) -> None:
        for owner, reminders in self._store.load_all().items():
            doomed = [r.id for r in reminders if self._expired(owner, r, now)]
            if doomed:
                removed = self._store.delete(owner, doomed)
                report.purged += removed
                logger.info(f"Deleted {removed} expired reminder(s) for {owner}")
