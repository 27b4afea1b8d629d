"""Value types shared by the read models, the session and the remote store."""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

MESSAGES_COLLECTION = "messages"
USERS_COLLECTION = "users"

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"

PRESENCE_ONLINE = "online"
PRESENCE_OFFLINE = "offline"

AVATAR_URL_TEMPLATE = "https://ui-avatars.com/api/?name={name}&background=ec4899&color=fff"


def default_avatar_url(name: str) -> str:
    return AVATAR_URL_TEMPLATE.format(name=urllib.parse.quote(name, safe=""))


@dataclass(frozen=True)
class ChannelMessagesTopic:
    channel_id: str
    kind: str = "channelMessages"


@dataclass(frozen=True)
class PresenceTopic:
    kind: str = "presence"


Topic = Union[ChannelMessagesTopic, PresenceTopic]


@dataclass(frozen=True)
class UserProfile:
    """The authenticated local user, as handed over by the auth layer."""

    uid: str
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        return self.email.split("@")[0]

    @property
    def avatar_url(self) -> str:
        return self.photo_url or default_avatar_url(self.display_name or self.email)


@dataclass(frozen=True)
class Message:
    id: str
    channel: str
    author_id: str
    author_display_name: str
    author_avatar_url: str
    text: str
    sent_at: Optional[int]
    author_email: str = ""
    status: str = STATUS_CONFIRMED
    local_created_ms: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.sent_at is None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        """Build an authoritative message from a ``messages`` document.

        Raises ``ValueError`` when a required field is missing or mistyped.
        """

        if not isinstance(doc, dict):
            raise ValueError("message document must be an object")
        for field_name in ("id", "channel", "user_id", "text"):
            value = doc.get(field_name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"message document missing {field_name}")
        ts_ms = doc.get("ts_ms")
        if ts_ms is not None and (isinstance(ts_ms, bool) or not isinstance(ts_ms, int)):
            raise ValueError("ts_ms must be an integer or null")
        email = str(doc.get("email") or "")
        display_name = str(doc.get("display_name") or email.split("@")[0] or doc["user_id"])
        return cls(
            id=doc["id"],
            channel=doc["channel"],
            author_id=doc["user_id"],
            author_display_name=display_name,
            author_avatar_url=str(doc.get("avatar") or default_avatar_url(display_name)),
            text=doc["text"],
            sent_at=ts_ms,
            author_email=email,
        )

    def to_document(self) -> Dict[str, Any]:
        """Record body for a remote write; the store assigns ``id`` and ``ts_ms``."""

        return {
            "channel": self.channel,
            "user_id": self.author_id,
            "display_name": self.author_display_name,
            "email": self.author_email,
            "avatar": self.author_avatar_url,
            "text": self.text,
        }

    def with_status(self, status: str) -> "Message":
        return replace(self, status=status)


@dataclass(frozen=True)
class PresenceEntry:
    user_id: str
    display_name: str
    email: str
    avatar_url: str

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PresenceEntry":
        if not isinstance(doc, dict):
            raise ValueError("user document must be an object")
        uid = doc.get("uid")
        if not isinstance(uid, str) or not uid:
            raise ValueError("user document missing uid")
        email = str(doc.get("email") or "")
        display_name = str(doc.get("display_name") or email.split("@")[0] or uid)
        return cls(
            user_id=uid,
            display_name=display_name,
            email=email,
            avatar_url=str(doc.get("avatar") or default_avatar_url(display_name)),
        )


def parse_documents(docs: Iterable[Any], parser) -> Tuple[List[Any], int]:
    """Parse what can be parsed; return ``(items, skipped_count)``."""

    items: List[Any] = []
    skipped = 0
    for doc in docs:
        try:
            items.append(parser(doc))
        except (ValueError, TypeError, KeyError):
            skipped += 1
    return items, skipped
