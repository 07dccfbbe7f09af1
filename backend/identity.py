"""
identity.py
───────────
Works out which messaging endpoint a phone number should be sent to.

Contacts are addressed inconsistently: some by a phone-derived id
("<digits>@c.us"), others only by an internal id ("<n>@lid") unrelated to the
phone number. Resolution order:

  1. the live conversation list (matched on normalized digits)
  2. the directory lookup (phone id -> lid / pn)
  3. a synthesized "<digits>@c.us"

A synthesized id that the backend rejects with "No LID" is retried once as
"<digits>@s.whatsapp.net".
"""

import re
from dataclasses import dataclass
from typing import Optional, Set

from logger import logger
from messaging import Conversation, MessagingClient

C_US_SUFFIX  = "@c.us"
S_NET_SUFFIX = "@s.whatsapp.net"

_NON_DIGITS = re.compile(r"\D")


class ResolutionError(Exception):
    """No endpoint could be derived for the phone number."""


class DeliveryError(Exception):
    """The messaging backend did not accept the message."""


def digits_only(phone: object) -> str:
    return _NON_DIGITS.sub("", str(phone or ""))


def phone_variants(digits: str, country_code: str) -> Set[str]:
    """The digits with and without the country prefix (local leading 0 dropped)."""
    variants = {digits}
    if not country_code:
        return variants
    if digits.startswith(country_code):
        variants.add(digits[len(country_code):] or digits)
    else:
        variants.add(country_code + (digits[1:] if digits.startswith("0") else digits))
    return variants


@dataclass(frozen=True)
class Resolution:
    chat_id: str
    source: str                                    # conversation | directory | default | fallback
    conversation: Optional[Conversation] = None

    @property
    def synthesized(self) -> bool:
        return self.source == "default"


class IdentityResolver:
    def __init__(self, client: MessagingClient, country_code: str = "972"):
        self._client       = client
        self._country_code = country_code

    def _from_conversations(self, digits: str) -> Optional[Conversation]:
        variants = phone_variants(digits, self._country_code)
        for conversation in self._client.list_conversations():
            if conversation.is_group:
                continue
            prefix = conversation.prefix
            if prefix == digits or digits_only(prefix) in variants:
                return conversation
        return None

    def _from_directory(self, digits: str) -> Optional[str]:
        entries = self._client.lookup_directory([f"{digits}{C_US_SUFFIX}"])
        first = entries[0] if entries else None
        if first is None:
            return None
        return first.lid or first.pn

    def resolve(self, phone: str) -> Optional[Resolution]:
        digits = digits_only(phone)
        if not digits:
            return None

        try:
            conversation = self._from_conversations(digits)
        except Exception as e:
            logger.error(f"Listing conversations failed while resolving {phone}: {e}")
            conversation = None
        if conversation is not None:
            return Resolution(chat_id=conversation.id, source="conversation", conversation=conversation)

        try:
            found = self._from_directory(digits)
        except Exception as e:
            logger.warning(f"Directory lookup failed for {phone}: {e}")
            found = None
        if found:
            return Resolution(chat_id=found, source="directory")

        return Resolution(chat_id=f"{digits}{C_US_SUFFIX}", source="default")

    def deliver(self, phone: str, text: str) -> Resolution:
        """Resolve and send. Raises ResolutionError or DeliveryError."""
        resolution = self.resolve(phone)
        if resolution is None:
            raise ResolutionError(f"Phone number {phone!r} has no digits")

        try:
            self._client.send(resolution.conversation or resolution.chat_id, text)
            return resolution
        except Exception as e:
            if not (resolution.synthesized and "No LID" in str(e)):
                raise DeliveryError(f"Send to {resolution.chat_id} failed: {e}") from e
            first_error = e

        fallback_id = f"{digits_only(phone)}{S_NET_SUFFIX}"
        logger.warning(f"{resolution.chat_id} has no LID, retrying as {fallback_id}")
        try:
            self._client.send(fallback_id, text)
        except Exception as e:
            logger.error(f"Fallback send to {fallback_id} failed: {e}")
            raise DeliveryError(f"Send to {resolution.chat_id} failed: {first_error}") from first_error
        return Resolution(chat_id=fallback_id, source="fallback")
