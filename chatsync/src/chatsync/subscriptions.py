from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ChatSyncError, SubscriptionConflictError, SubscriptionFailedError, TransientNetworkError
from .models import MESSAGES_COLLECTION, PRESENCE_ONLINE, USERS_COLLECTION, ChannelMessagesTopic, PresenceTopic, Topic
from .remote import Document, FieldFilter, RemoteChannel, RemoteSubscription, SortSpec

logger = logging.getLogger(__name__)

Callback = Callable[[List[Document]], None]
ErrorHandler = Callable[[Exception], None]


def query_for(topic: Topic) -> Tuple[str, FieldFilter, Optional[SortSpec]]:
    """Map a topic to the remote collection, filter and sort it listens to."""

    if isinstance(topic, ChannelMessagesTopic):
        return MESSAGES_COLLECTION, FieldFilter("channel", topic.channel_id), SortSpec("ts_ms")
    if isinstance(topic, PresenceTopic):
        return USERS_COLLECTION, FieldFilter("status", PRESENCE_ONLINE), None
    raise ValueError(f"unsupported topic: {topic!r}")


@dataclass(eq=False)
class SubscriptionHandle:
    topic: Topic
    generation: int
    callback: Callback
    remote: Optional[RemoteSubscription] = None
    cancelled: bool = False


class SubscriptionManager:
    """Keeps at most one live subscription per topic.

    Every remote delivery is routed through a generation check: a snapshot
    only reaches its callback while its handle is still the one tracked for
    the topic. Anything queued for a cancelled or superseded handle is dropped.
    """

    def __init__(self, remote: RemoteChannel) -> None:
        self._remote = remote
        self._live: Dict[Topic, SubscriptionHandle] = {}
        self._generation = 0
        self.dropped_notifications = 0

    async def subscribe(
        self,
        topic: Topic,
        on_snapshot: Callback,
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        """Open a subscription for ``topic``, replacing any existing one.

        The handle is tracked before the remote call is awaited, so a later
        ``subscribe``/``cancel`` for the same topic supersedes it even while
        the initial response is outstanding. Failures of the remote call are
        raised to the caller and never retried here; anything that is not
        already a ``ChatSyncError`` is raised as ``TransientNetworkError``
        (connection problems) or ``SubscriptionFailedError``.

        ``on_error`` fires once if a live subscription is lost later; the
        handle is dropped before it is called.
        """

        previous = self._live.get(topic)
        if previous is not None:
            self.cancel(previous)

        self._generation += 1
        handle = SubscriptionHandle(topic=topic, generation=self._generation, callback=on_snapshot)
        self._live[topic] = handle
        collection, where, order_by = query_for(topic)

        def deliver(docs: List[Document]) -> None:
            self._dispatch(handle, docs)

        def lost(exc: Exception) -> None:
            self._lost(handle, exc, on_error)

        try:
            remote = await self._remote.subscribe(collection, where, order_by, deliver, on_error=lost)
        except BaseException as exc:
            self._discard(handle)
            if isinstance(exc, (OSError, asyncio.TimeoutError)):
                raise TransientNetworkError(f"subscribe failed for {topic!r}") from exc
            if isinstance(exc, Exception) and not isinstance(exc, ChatSyncError):
                logger.exception("remote subscribe failed topic=%r", topic)
                raise SubscriptionFailedError("remote_error", str(exc) or type(exc).__name__) from exc
            raise

        if handle.cancelled:
            # Superseded or lost while the initial response was in flight.
            remote.cancel()
        else:
            handle.remote = remote
            logger.debug("subscribed topic=%r generation=%d", topic, handle.generation)
        return handle

    def cancel(self, handle: SubscriptionHandle) -> None:
        """Make ``handle`` inert immediately; repeated calls are no-ops."""

        if handle.cancelled:
            return
        handle.cancelled = True
        if self._live.get(handle.topic) is handle:
            del self._live[handle.topic]
        remote, handle.remote = handle.remote, None
        if remote is not None:
            remote.cancel()
        logger.debug("cancelled topic=%r generation=%d", handle.topic, handle.generation)

    def cancel_topic(self, topic: Topic) -> None:
        handle = self._live.get(topic)
        if handle is not None:
            self.cancel(handle)

    def cancel_all(self) -> None:
        for handle in list(self._live.values()):
            self.cancel(handle)

    def live_handle(self, topic: Topic) -> Optional[SubscriptionHandle]:
        return self._live.get(topic)

    def is_live(self, handle: SubscriptionHandle) -> bool:
        return not handle.cancelled and self._live.get(handle.topic) is handle

    @property
    def live_count(self) -> int:
        return len(self._live)

    def _discard(self, handle: SubscriptionHandle) -> None:
        handle.cancelled = True
        if self._live.get(handle.topic) is handle:
            del self._live[handle.topic]

    def _check_current(self, handle: SubscriptionHandle) -> None:
        if not self.is_live(handle):
            raise SubscriptionConflictError(handle.topic, handle.generation)

    def _dispatch(self, handle: SubscriptionHandle, docs: List[Document]) -> None:
        try:
            self._check_current(handle)
        except SubscriptionConflictError as exc:
            self.dropped_notifications += 1
            logger.debug("dropped stale snapshot: %s", exc)
            return
        try:
            handle.callback(docs)
        except Exception:
            logger.exception("snapshot handler failed topic=%r", handle.topic)

    def _lost(self, handle: SubscriptionHandle, exc: Exception, on_error: Optional[ErrorHandler]) -> None:
        if not self.is_live(handle):
            logger.debug("ignored loss of inactive subscription topic=%r: %s", handle.topic, exc)
            return
        self._discard(handle)
        handle.remote = None
        logger.warning("subscription lost topic=%r: %s", handle.topic, exc)
        if on_error is None:
            return
        try:
            on_error(exc)
        except Exception:
            logger.exception("subscription error handler failed topic=%r", handle.topic)
