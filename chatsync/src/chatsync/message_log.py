from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, Optional, Set, Tuple

from .models import STATUS_FAILED, STATUS_PENDING, Message

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_WINDOW_MS = 30_000


class MessageLog:
    """Ordered, deduplicated view of one channel's messages.

    The authoritative part is always exactly the latest snapshot. Optimistic
    echoes added with ``append`` ride alongside it until a snapshot carries the
    record they stand for. Order is ``sent_at`` ascending, with pending
    entries last; ties fall back to the order in which each id was first seen.
    """

    def __init__(self, *, reconcile_window_ms: int = DEFAULT_RECONCILE_WINDOW_MS) -> None:
        self.reconcile_window_ms = reconcile_window_ms
        self._authoritative: Dict[str, Message] = {}
        self._local: Dict[str, Message] = {}
        self._server_ids: Dict[str, str] = {}
        self._arrival: Dict[str, int] = {}
        self._next_arrival = 0
        self._messages: Tuple[Message, ...] = ()

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    @property
    def is_empty(self) -> bool:
        return not self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        return self._authoritative.get(message_id) or self._local.get(message_id)

    def reset(self) -> bool:
        changed = bool(self._messages)
        self._authoritative.clear()
        self._local.clear()
        self._server_ids.clear()
        self._arrival.clear()
        self._next_arrival = 0
        self._messages = ()
        return changed

    def apply_snapshot(self, records: Iterable[Message]) -> bool:
        """Replace the authoritative set with ``records``; return whether the view changed."""

        authoritative: Dict[str, Message] = {}
        for record in records:
            authoritative[record.id] = record

        claimed: Set[str] = set()
        for local_id, local in list(self._local.items()):
            match = self._server_ids.get(local_id)
            if match not in authoritative:
                # A failed write may still have been stored; its acknowledgment was lost.
                match = self._find_echo(local, authoritative, claimed)
            if match is None:
                continue
            claimed.add(match)
            self._settle(local_id, match)

        for record_id in authoritative:
            self._remember_arrival(record_id)
        self._authoritative = authoritative
        self._arrival = {
            message_id: arrival
            for message_id, arrival in self._arrival.items()
            if message_id in authoritative or message_id in self._local
        }
        return self._rebuild()

    def append(self, message: Message) -> bool:
        """Show an optimistic echo until the authoritative record arrives."""

        if message.status != STATUS_PENDING:
            raise ValueError("only pending messages can be appended")
        if message.id in self._local or message.id in self._authoritative:
            return False
        self._local[message.id] = message
        self._remember_arrival(message.id)
        return self._rebuild()

    def confirm(self, local_id: str, server_id: str) -> bool:
        """Bind an echo to the id the store acknowledged for it."""

        if local_id not in self._local:
            return False
        if server_id in self._authoritative:
            self._settle(local_id, server_id)
            return self._rebuild()
        self._server_ids[local_id] = server_id
        return False

    def mark_failed(self, local_id: str) -> bool:
        local = self._local.get(local_id)
        if local is None or local.status == STATUS_FAILED:
            return False
        self._local[local_id] = local.with_status(STATUS_FAILED)
        return self._rebuild()

    def discard(self, local_id: str) -> bool:
        if self._local.pop(local_id, None) is None:
            return False
        self._server_ids.pop(local_id, None)
        self._arrival.pop(local_id, None)
        return self._rebuild()

    def _find_echo(self, local: Message, authoritative: Dict[str, Message], claimed: Set[str]) -> Optional[str]:
        bound = set(self._server_ids.values())
        for record in authoritative.values():
            if record.id in claimed or record.id in bound or record.id in self._arrival:
                continue
            if (record.author_id, record.text, record.channel) != (local.author_id, local.text, local.channel):
                continue
            if record.sent_at is None or local.local_created_ms is None:
                return record.id
            if abs(record.sent_at - local.local_created_ms) <= self.reconcile_window_ms:
                return record.id
        return None

    def _settle(self, local_id: str, server_id: str) -> None:
        self._local.pop(local_id, None)
        self._server_ids.pop(local_id, None)
        arrival = self._arrival.pop(local_id, None)
        if arrival is not None and server_id not in self._arrival:
            self._arrival[server_id] = arrival
        logger.debug("reconciled echo local_id=%s id=%s", local_id, server_id)

    def _remember_arrival(self, message_id: str) -> None:
        if message_id not in self._arrival:
            self._arrival[message_id] = self._next_arrival
            self._next_arrival += 1

    def _sort_key(self, message: Message) -> Tuple[bool, int, int]:
        return (message.sent_at is None, message.sent_at or 0, self._arrival.get(message.id, 0))

    def _rebuild(self) -> bool:
        combined = list(self._authoritative.values()) + list(self._local.values())
        ordered = tuple(sorted(combined, key=self._sort_key))
        if ordered == self._messages:
            return False
        self._messages = ordered
        return True
