"""``RemoteChannel`` backed by an in-process ``DocumentStore``."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List, Optional, Tuple

from .errors import SubscriptionFailedError, TransientNetworkError, WriteAcknowledgmentError
from .remote import Document, ErrorCallback, FieldFilter, SnapshotCallback, SortSpec
from .store import DocumentStore, QuerySubscription, RecordRejected


class MemorySubscription:
    def __init__(
        self,
        store: DocumentStore,
        subscription: QuerySubscription,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._store = store
        self._subscription: Optional[QuerySubscription] = subscription
        self.on_error = on_error

    @property
    def active(self) -> bool:
        return self._subscription is not None

    def cancel(self) -> None:
        if self._subscription is None:
            return
        self._store.unsubscribe(self._subscription)
        self._subscription = None


class InMemoryRemoteChannel:
    """Remote collaborator for tests, the simulator and single-process use.

    With ``hold_deliveries`` set, snapshots are queued instead of delivered and
    ``flush()`` hands them out later, including to subscriptions that were
    cancelled in the meantime, which models notifications already in flight.
    Setting ``offline`` makes every call fail with ``TransientNetworkError``;
    ``drop_connection()`` ends every open subscription as a lost connection would.
    """

    def __init__(self, store: DocumentStore | None = None, *, hold_deliveries: bool = False) -> None:
        self.store = store or DocumentStore()
        self.hold_deliveries = hold_deliveries
        self.offline = False
        self._queue: Deque[Tuple[SnapshotCallback, List[Document]]] = deque()
        self._subscriptions: List[MemorySubscription] = []

    async def write(self, collection: str, record: Document) -> Document:
        await asyncio.sleep(0)
        self._check_online()
        try:
            return self.store.append(collection, record)
        except RecordRejected as exc:
            raise WriteAcknowledgmentError(exc.code, str(exc)) from exc

    async def set(self, collection: str, doc_id: str, record: Document) -> Document:
        await asyncio.sleep(0)
        self._check_online()
        try:
            return self.store.put(collection, doc_id, record)
        except RecordRejected as exc:
            raise WriteAcknowledgmentError(exc.code, str(exc)) from exc

    async def subscribe(
        self,
        collection: str,
        where: FieldFilter,
        order_by: Optional[SortSpec],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> MemorySubscription:
        await asyncio.sleep(0)
        self._check_online()

        def route(docs: List[Document]) -> None:
            if self.hold_deliveries:
                self._queue.append((on_snapshot, docs))
            else:
                on_snapshot(docs)

        try:
            subscription = self.store.subscribe(collection, where, order_by, route)
        except RecordRejected as exc:
            raise SubscriptionFailedError(exc.code, str(exc)) from exc
        handle = MemorySubscription(self.store, subscription, on_error)
        self._subscriptions = [sub for sub in self._subscriptions if sub.active]
        self._subscriptions.append(handle)
        return handle

    @property
    def pending_deliveries(self) -> int:
        return len(self._queue)

    def flush(self) -> int:
        """Deliver every queued snapshot in arrival order; return how many."""

        delivered = 0
        while self._queue:
            callback, docs = self._queue.popleft()
            callback(docs)
            delivered += 1
        return delivered

    def drop_connection(self) -> int:
        """End every open subscription with ``TransientNetworkError``; return how many."""

        subscriptions, self._subscriptions = self._subscriptions, []
        dropped = 0
        for subscription in subscriptions:
            if not subscription.active:
                continue
            subscription.cancel()
            dropped += 1
            if subscription.on_error is not None:
                subscription.on_error(TransientNetworkError("connection lost"))
        return dropped

    def _check_online(self) -> None:
        if self.offline:
            raise TransientNetworkError("remote store unreachable")
