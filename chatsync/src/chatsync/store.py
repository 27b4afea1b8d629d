"""In-process document store with query subscriptions and presence expiry."""

from __future__ import annotations

import asyncio
import copy
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

from .models import MESSAGES_COLLECTION, PRESENCE_OFFLINE, PRESENCE_ONLINE, USERS_COLLECTION
from .remote import DESCENDING, Document, FieldFilter, SnapshotCallback, SortSpec

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_doc_id() -> str:
    return secrets.token_hex(10)


@dataclass
class StoreConfig:
    presence_ttl_s: int = 90
    sweeper_interval_seconds: float = 5.0
    max_text_length: int = 2000
    collections: FrozenSet[str] = field(default_factory=lambda: frozenset({MESSAGES_COLLECTION, USERS_COLLECTION}))


class RecordRejected(Exception):
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


@dataclass(eq=False)
class QuerySubscription:
    collection: str
    where: FieldFilter
    order_by: Optional[SortSpec]
    callback: SnapshotCallback
    active: bool = True


class DocumentStore:
    """Collections of JSON documents; every change re-delivers full query results."""

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        id_func: Callable[[], str] = _new_doc_id,
    ) -> None:
        self.config = config or StoreConfig()
        self._now = now_func
        self._new_id = id_func
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._subscriptions: Dict[str, List[QuerySubscription]] = {}
        self._sweeper_task: asyncio.Task | None = None

    def append(self, collection: str, record: Document) -> Document:
        """Store a new document, assigning ``id`` and the server timestamp ``ts_ms``."""

        self._check_collection(collection)
        if not isinstance(record, dict):
            raise RecordRejected("invalid_record", "record must be an object")
        doc = {k: copy.deepcopy(v) for k, v in record.items() if k not in {"id", "ts_ms"}}
        if collection == MESSAGES_COLLECTION:
            self._validate_message(doc)
        doc["id"] = self._new_id()
        doc["ts_ms"] = self._now()
        self._collections.setdefault(collection, {})[doc["id"]] = doc
        logger.debug("store append collection=%s id=%s", collection, doc["id"])
        self._fanout(collection, doc, None)
        return copy.deepcopy(doc)

    def put(self, collection: str, doc_id: str, record: Document) -> Document:
        """Create or replace ``doc_id``; user records get ``last_seen_ms`` stamped."""

        self._check_collection(collection)
        if not doc_id or not isinstance(record, dict):
            raise RecordRejected("invalid_record", "doc_id and an object record are required")
        doc = {k: copy.deepcopy(v) for k, v in record.items() if k != "id"}
        doc["id"] = doc_id
        if collection == USERS_COLLECTION:
            doc["uid"] = doc.get("uid") or doc_id
            doc["last_seen_ms"] = self._now()
        docs = self._collections.setdefault(collection, {})
        previous = docs.get(doc_id)
        docs[doc_id] = doc
        logger.debug("store put collection=%s id=%s", collection, doc_id)
        self._fanout(collection, doc, previous)
        return copy.deepcopy(doc)

    def query(self, collection: str, where: FieldFilter, order_by: Optional[SortSpec] = None) -> List[Document]:
        docs = [doc for doc in self._collections.get(collection, {}).values() if where.matches(doc)]
        if order_by is not None:
            sort_field = order_by.field
            docs.sort(
                key=lambda doc: (doc.get(sort_field) is None, doc.get(sort_field) or 0),
                reverse=order_by.direction == DESCENDING,
            )
        return copy.deepcopy(docs)

    def subscribe(
        self,
        collection: str,
        where: FieldFilter,
        order_by: Optional[SortSpec],
        callback: SnapshotCallback,
        *,
        deliver_initial: bool = True,
    ) -> QuerySubscription:
        self._check_collection(collection)
        subscription = QuerySubscription(collection=collection, where=where, order_by=order_by, callback=callback)
        self._subscriptions.setdefault(collection, []).append(subscription)
        if deliver_initial:
            self._deliver(subscription)
        return subscription

    def unsubscribe(self, subscription: QuerySubscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.collection)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.collection, None)

    def subscriber_count(self, collection: str) -> int:
        return len(self._subscriptions.get(collection, []))

    def expire_presence(self) -> List[str]:
        """Flip online users whose heartbeat is older than the TTL to offline."""

        now_ms = self._now()
        ttl_ms = self.config.presence_ttl_s * 1000
        expired: List[Document] = []
        for doc in self._collections.get(USERS_COLLECTION, {}).values():
            if doc.get("status") != PRESENCE_ONLINE:
                continue
            last_seen = doc.get("last_seen_ms")
            if not isinstance(last_seen, int) or last_seen + ttl_ms <= now_ms:
                expired.append(doc)

        for doc in expired:
            previous = dict(doc)
            doc["status"] = PRESENCE_OFFLINE
            self._fanout(USERS_COLLECTION, doc, previous)
        if expired:
            logger.info("presence expired count=%d", len(expired))
        return [doc["id"] for doc in expired]

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweeper_interval_seconds)
                self.expire_presence()
        except asyncio.CancelledError:
            return

    def _check_collection(self, collection: str) -> None:
        if collection not in self.config.collections:
            raise RecordRejected("permission_denied", f"collection {collection!r} is not accessible")

    def _validate_message(self, doc: Document) -> None:
        text = doc.get("text")
        if not isinstance(text, str) or not text.strip():
            raise RecordRejected("invalid_record", "text must be a non-empty string")
        if len(text) > self.config.max_text_length:
            raise RecordRejected("quota_exceeded", "text exceeds maximum length")
        for required in ("channel", "user_id"):
            if not isinstance(doc.get(required), str) or not doc[required]:
                raise RecordRejected("invalid_record", f"{required} is required")

    def _fanout(self, collection: str, doc: Document, previous: Optional[Document]) -> None:
        for subscription in list(self._subscriptions.get(collection, [])):
            affected = subscription.where.matches(doc) or (
                previous is not None and subscription.where.matches(previous)
            )
            if affected:
                self._deliver(subscription)

    def _deliver(self, subscription: QuerySubscription) -> None:
        if not subscription.active:
            return
        docs = self.query(subscription.collection, subscription.where, subscription.order_by)
        try:
            subscription.callback(docs)
        except Exception:
            logger.exception("snapshot callback failed collection=%s", subscription.collection)
