"""
messaging.py
────────────
The narrow messaging capability the scheduler depends on, plus two
implementations:

  StubMessagingClient  : in-process, always ready, logs and records sends
  HttpMessagingClient  : talks to a WhatsApp HTTP bridge running beside us

Session management (login, QR codes, reconnects) belongs to the bridge.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import httpx

from logger import logger


class MessagingError(Exception):
    """The messaging backend rejected or could not perform a call."""


@dataclass(frozen=True)
class Conversation:
    id: str                       # serialized endpoint id, e.g. "1203@lid"
    is_group: bool = False
    name: str = ""

    @property
    def prefix(self) -> str:
        return self.id.split("@", 1)[0]


@dataclass(frozen=True)
class DirectoryEntry:
    lid: Optional[str] = None
    pn: Optional[str] = None


SendTarget = Union[Conversation, str]


def target_id(target: SendTarget) -> str:
    return target.id if isinstance(target, Conversation) else target


class MessagingClient(Protocol):
    def is_ready(self) -> bool: ...

    def list_conversations(self) -> List[Conversation]: ...

    def lookup_directory(self, ids: Sequence[str]) -> List[DirectoryEntry]: ...

    def send(self, target: SendTarget, text: str) -> None: ...


class StubMessagingClient:
    def __init__(
        self,
        conversations: Optional[List[Conversation]] = None,
        directory: Optional[Dict[str, DirectoryEntry]] = None,
        ready: bool = True,
    ):
        self.conversations = list(conversations or [])
        self.directory     = dict(directory or {})
        self.ready         = ready
        self.sent: List[Tuple[str, str]] = []

    def is_ready(self) -> bool:
        return self.ready

    def list_conversations(self) -> List[Conversation]:
        return list(self.conversations)

    def lookup_directory(self, ids: Sequence[str]) -> List[DirectoryEntry]:
        return [self.directory.get(i, DirectoryEntry()) for i in ids]

    def send(self, target: SendTarget, text: str) -> None:
        chat_id = target_id(target)
        logger.info(f"[stub] message to {chat_id}: {text!r}")
        self.sent.append((chat_id, text))


class HttpMessagingClient:
    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0, transport=None):
        if not base_url:
            raise ValueError("HttpMessagingClient needs a base URL")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._http = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def _call(self, method: str, path: str, **kwargs):
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise MessagingError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            try:
                detail = response.json().get("error") or response.text
            except ValueError:
                detail = response.text
            raise MessagingError(f"{method} {path} -> {response.status_code}: {detail}")
        return response.json() if response.content else None

    def is_ready(self) -> bool:
        try:
            body = self._call("GET", "/state")
        except MessagingError as e:
            logger.debug(f"Messaging bridge not reachable: {e}")
            return False
        return isinstance(body, dict) and body.get("state") == "CONNECTED"

    def list_conversations(self) -> List[Conversation]:
        body = self._call("GET", "/chats") or []
        return [
            Conversation(
                id=str(item.get("id", "")),
                is_group=bool(item.get("isGroup", False)),
                name=str(item.get("name") or ""),
            )
            for item in body
            if isinstance(item, dict) and item.get("id")
        ]

    def lookup_directory(self, ids: Sequence[str]) -> List[DirectoryEntry]:
        body = self._call("POST", "/contacts/lid-and-phone", json={"ids": list(ids)}) or []
        return [
            DirectoryEntry(lid=item.get("lid"), pn=item.get("pn"))
            for item in body
            if isinstance(item, dict)
        ]

    def send(self, target: SendTarget, text: str) -> None:
        self._call("POST", "/messages", json={"chat_id": target_id(target), "text": text})
