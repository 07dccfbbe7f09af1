"""
dispatch.py
───────────
Turns a reminder target into a sent message: template → identity resolution
→ MessagingClient.send(). Shared by the scheduler tick and the manual
"send this reminder now" path.
"""

from datetime import datetime, timedelta
from typing import Optional

from clock import Clock
from identity import IdentityResolver, Resolution
from logger import logger
from messaging import MessagingClient
from models import ReminderBase
from occurrence import next_occurrence
from status import StatusBook
from storage import RecordStore
from templates import TemplateSource, describe_date, describe_day, format_template


class ClientNotReadyError(Exception):
    """The messaging client is not connected; try again later."""


class ReminderNotFoundError(Exception):
    pass


class Dispatcher:
    def __init__(
        self,
        store: RecordStore,
        client: MessagingClient,
        templates: TemplateSource,
        clock: Clock,
        country_code: str = "972",
        catch_up_grace: float = 300.0,
    ):
        self._store     = store
        self._client    = client
        self._templates = templates
        self._clock     = clock
        self._resolver  = IdentityResolver(client, country_code)
        self.statuses   = StatusBook(store, clock, timedelta(seconds=catch_up_grace))

    def is_ready(self) -> bool:
        try:
            return bool(self._client.is_ready())
        except Exception as e:
            logger.warning(f"Messaging readiness check failed: {e}")
            return False

    def compose(self, owner: str, reminder: ReminderBase, now: Optional[datetime] = None) -> str:
        now = now or self._clock.now()
        occurrence = reminder.occurrence or next_occurrence(reminder, now)
        return format_template(self._templates.load(), {
            "name": reminder.client_name or owner,
            "day":  describe_day(reminder, occurrence),
            "time": reminder.time,
            "date": describe_date(now),
        })

    def deliver(self, owner: str, reminder: ReminderBase, target: str) -> Resolution:
        """One delivery attempt. Raises ResolutionError / DeliveryError."""
        text = self.compose(owner, reminder)
        resolution = self._resolver.deliver(owner, text)
        logger.info(
            f"Reminder sent: {target} to {owner} via {resolution.chat_id} "
            f"({resolution.source}, reminder ID: {reminder.id})"
        )
        return resolution

    def send_now(self, owner: str, reminder_id: str) -> ReminderBase:
        """
        Manual send of one reminder.

        Every active lead target is marked sent *before* the message goes out,
        in one atomic update, so a racing tick sees them as done. The main
        target is left alone and still fires at its occurrence.
        """
        if not self.is_ready():
            raise ClientNotReadyError("Messaging client not ready")

        if self._store.get(owner, reminder_id) is None:
            raise ReminderNotFoundError(f"Reminder {reminder_id} not found for {owner}")

        reminder = self.statuses.mark_pre_reminders_sent(owner, reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(f"Reminder {reminder_id} not found for {owner}")

        self.deliver(owner, reminder, "manual")
        logger.info(f"Reminder sent manually to {owner} (reminder ID: {reminder_id})")
        return reminder
