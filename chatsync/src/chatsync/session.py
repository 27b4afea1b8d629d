"""Session orchestration: sign-in state, channel binding and read-model fan-out."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import (
    NotSignedInError,
    SubscriptionFailedError,
    TransientNetworkError,
    ValidationError,
    WriteAcknowledgmentError,
)
from .message_log import DEFAULT_RECONCILE_WINDOW_MS, MessageLog
from .models import (
    MESSAGES_COLLECTION,
    PRESENCE_OFFLINE,
    PRESENCE_ONLINE,
    STATUS_FAILED,
    STATUS_PENDING,
    USERS_COLLECTION,
    ChannelMessagesTopic,
    Message,
    PresenceEntry,
    PresenceTopic,
    UserProfile,
    parse_documents,
)
from .presence import PresenceSet
from .remote import Document, RemoteChannel
from .search import SearchResult, search
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS: Dict[str, str] = {
    "ideas": "Share and discuss business ideas with the community",
    "support": "Get answers to your questions and help others",
    "partnerships": "Find collaborators and business partners",
    "growth": "Discuss strategies for scaling your business",
    "resources": "Share and discover helpful student resources",
}
FALLBACK_CHANNEL_DESCRIPTION = "Chat channel"

ERROR_SUBSCRIBE = "subscribe"
ERROR_SEND = "send"
ERROR_PRESENCE = "presence"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_local_id() -> str:
    return f"local-{secrets.token_hex(8)}"


@dataclass
class SessionConfig:
    default_channel: str = "ideas"
    channels: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CHANNELS))
    reconcile_window_ms: int = DEFAULT_RECONCILE_WINDOW_MS
    presence_heartbeat_s: Optional[float] = 30.0

    def describe(self, channel_id: str) -> str:
        return self.channels.get(channel_id, FALLBACK_CHANNEL_DESCRIPTION)


@dataclass(frozen=True)
class SignedOut:
    pass


@dataclass(frozen=True)
class SignedIn:
    user: UserProfile
    channel_id: str


SessionState = Union[SignedOut, SignedIn]


@dataclass(frozen=True)
class SessionError:
    """A failure the presentation layer renders instead of an exception."""

    kind: str
    message: str
    channel_id: Optional[str] = None
    recoverable: bool = True


Listener = Callable[[Any], None]


class ChatSession:
    """Owns the subscriptions and read models for one signed-in user.

    State moves ``SignedOut -> SignedIn(channel) -> SignedIn(other) -> SignedOut``.
    Every transition installs a new state object; work that resumes after an
    await checks whether its state is still current before touching anything.
    """

    def __init__(
        self,
        remote: RemoteChannel,
        config: SessionConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        local_id_func: Callable[[], str] = _new_local_id,
    ) -> None:
        self.config = config or SessionConfig()
        self._remote = remote
        self._now = now_func
        self._new_local_id = local_id_func
        self._subscriptions = SubscriptionManager(remote)
        self._log = MessageLog(reconcile_window_ms=self.config.reconcile_window_ms)
        self._presence = PresenceSet()
        self._state: SessionState = SignedOut()
        self._last_search: Optional[SearchResult] = None
        self._error: Optional[SessionError] = None
        self._message_listeners: List[Listener] = []
        self._presence_listeners: List[Listener] = []
        self._error_listeners: List[Listener] = []
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def signed_in(self) -> bool:
        return isinstance(self._state, SignedIn)

    @property
    def channel_id(self) -> Optional[str]:
        return self._state.channel_id if isinstance(self._state, SignedIn) else None

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._log.messages

    @property
    def online_users(self) -> List[PresenceEntry]:
        return self._presence.sorted_entries()

    @property
    def message_log(self) -> MessageLog:
        return self._log

    @property
    def presence(self) -> PresenceSet:
        return self._presence

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def last_search(self) -> Optional[SearchResult]:
        return self._last_search

    @property
    def error(self) -> Optional[SessionError]:
        return self._error

    def on_message_log_changed(self, listener: Listener) -> Callable[[], None]:
        return self._add_listener(self._message_listeners, listener)

    def on_presence_changed(self, listener: Listener) -> Callable[[], None]:
        return self._add_listener(self._presence_listeners, listener)

    def on_error(self, listener: Listener) -> Callable[[], None]:
        return self._add_listener(self._error_listeners, listener)

    async def sign_in(self, user: UserProfile) -> None:
        """Bind presence and the default channel for a freshly authenticated user."""

        current = self._state
        if isinstance(current, SignedIn):
            if current.user == user:
                return
            await self.sign_out()

        state = SignedIn(user=user, channel_id=self.config.default_channel)
        self._state = state
        self._presence.self_user_id = user.uid
        self._set_error(None)
        logger.info("signed in uid=%s channel=%s", user.uid, state.channel_id)

        await self._bind_presence(user)
        if self._state is state:
            await self._bind_channel(state)
        if self._is_signed_in_as(user):
            await self._announce_presence(user, PRESENCE_ONLINE)
        if self._is_signed_in_as(user):
            self._start_heartbeat(user)

    async def switch_channel(self, channel_id: str) -> None:
        """Drop the current channel's subscription and log, then bind ``channel_id``.

        Re-selecting the current channel re-subscribes, which is the recovery
        path after a failed or lost subscription. A lost presence subscription
        is bound again as well.
        """

        current = self._state
        if not isinstance(current, SignedIn):
            raise NotSignedInError("sign in to switch channels")
        channel_id = (channel_id or "").strip()
        if not channel_id:
            raise ValidationError("channel id is empty")

        self._subscriptions.cancel_topic(ChannelMessagesTopic(current.channel_id))
        self._last_search = None
        if self._log.reset():
            self._notify_messages()
        state = SignedIn(user=current.user, channel_id=channel_id)
        self._state = state
        logger.info("switching channel %s -> %s", current.channel_id, channel_id)
        await self._bind_channel(state)
        if self._state is state and self._subscriptions.live_handle(PresenceTopic()) is None:
            await self._bind_presence(state.user)

    async def send_message(self, text: str) -> Message:
        """Show an optimistic echo and write it; returns the echo.

        Raises ``NotSignedInError``/``ValidationError`` before anything is
        written. A rejected or unreachable write marks the echo ``failed`` and
        re-raises.
        """

        state = self._require_signed_in("sign in to send messages")
        clean = (text or "").strip()
        if not clean:
            raise ValidationError("message text is empty")
        user = state.user
        echo = Message(
            id=self._new_local_id(),
            channel=state.channel_id,
            author_id=user.uid,
            author_display_name=user.name,
            author_avatar_url=user.avatar_url,
            text=clean,
            sent_at=None,
            author_email=user.email,
            status=STATUS_PENDING,
            local_created_ms=self._now(),
        )
        return await self._deliver(state, echo)

    async def retry_failed(self, local_id: str) -> Message:
        state = self._require_signed_in("sign in to send messages")
        failed = self._log.get(local_id)
        if failed is None or failed.status != STATUS_FAILED:
            raise ValidationError(f"no failed message with id {local_id}")
        self._log.discard(local_id)
        echo = replace(failed, id=self._new_local_id(), status=STATUS_PENDING, local_created_ms=self._now())
        return await self._deliver(state, echo)

    def search(self, term: str) -> SearchResult:
        result = search(term, self._log.messages)
        self._last_search = result
        return result

    async def sign_out(self) -> None:
        current = self._state
        if not isinstance(current, SignedIn):
            return
        self._state = SignedOut()
        self._subscriptions.cancel_all()
        self._last_search = None
        if self._log.reset():
            self._notify_messages()
        if self._presence.clear():
            self._notify_presence()
        self._presence.self_user_id = None
        logger.info("signed out uid=%s", current.user.uid)

        await self._stop_heartbeat()
        await self._announce_presence(current.user, PRESENCE_OFFLINE)

    async def close(self) -> None:
        await self.sign_out()

    async def _bind_channel(self, state: SignedIn) -> None:
        channel_id = state.channel_id

        def on_snapshot(docs: List[Document]) -> None:
            self._on_message_snapshot(channel_id, docs)

        def on_lost(exc: Exception) -> None:
            if self._state is state:
                self._set_error(
                    SessionError(kind=ERROR_SUBSCRIBE, message=str(exc), channel_id=channel_id, recoverable=True)
                )

        try:
            await self._subscriptions.subscribe(ChannelMessagesTopic(channel_id), on_snapshot, on_lost)
        except (TransientNetworkError, SubscriptionFailedError) as exc:
            logger.warning("message subscription failed channel=%s: %s", channel_id, exc)
            if self._state is state:
                self._set_error(
                    SessionError(
                        kind=ERROR_SUBSCRIBE,
                        message=str(exc),
                        channel_id=channel_id,
                        recoverable=isinstance(exc, TransientNetworkError),
                    )
                )
            return
        if self._state is state and self._error is not None and self._error.kind == ERROR_SUBSCRIBE:
            self._set_error(None)

    async def _bind_presence(self, user: UserProfile) -> None:
        def on_lost(exc: Exception) -> None:
            error = self._error
            if self._is_signed_in_as(user) and (error is None or error.kind != ERROR_SUBSCRIBE):
                self._set_error(SessionError(kind=ERROR_PRESENCE, message=str(exc), recoverable=True))

        try:
            await self._subscriptions.subscribe(PresenceTopic(), self._on_presence_snapshot, on_lost)
        except (TransientNetworkError, SubscriptionFailedError) as exc:
            logger.warning("presence subscription failed uid=%s: %s", user.uid, exc)
            if self._is_signed_in_as(user):
                self._set_error(
                    SessionError(
                        kind=ERROR_PRESENCE,
                        message=str(exc),
                        recoverable=isinstance(exc, TransientNetworkError),
                    )
                )
            return
        if self._is_signed_in_as(user) and self._error is not None and self._error.kind == ERROR_PRESENCE:
            self._set_error(None)

    async def _deliver(self, state: SignedIn, echo: Message) -> Message:
        if self._log.append(echo):
            self._notify_messages()
        try:
            stored = await self._remote.write(MESSAGES_COLLECTION, echo.to_document())
        except (TransientNetworkError, WriteAcknowledgmentError) as exc:
            logger.warning("send failed local_id=%s channel=%s: %s", echo.id, echo.channel, exc)
            if self._log.mark_failed(echo.id):
                self._notify_messages()
            if self._state is state:
                self._set_error(
                    SessionError(
                        kind=ERROR_SEND,
                        message=str(exc),
                        channel_id=echo.channel,
                        recoverable=isinstance(exc, TransientNetworkError),
                    )
                )
            raise
        server_id = stored.get("id") if isinstance(stored, dict) else None
        if isinstance(server_id, str) and self._log.confirm(echo.id, server_id):
            self._notify_messages()
        return echo

    async def _announce_presence(self, user: UserProfile, status: str) -> bool:
        record = {
            "uid": user.uid,
            "email": user.email,
            "display_name": user.name,
            "avatar": user.avatar_url,
            "status": status,
        }
        try:
            await self._remote.set(USERS_COLLECTION, user.uid, record)
        except (TransientNetworkError, WriteAcknowledgmentError) as exc:
            logger.warning("presence update failed uid=%s status=%s: %s", user.uid, status, exc)
            self._set_error(SessionError(kind=ERROR_PRESENCE, message=str(exc)))
            return False
        return True

    def _start_heartbeat(self, user: UserProfile) -> None:
        interval = self.config.presence_heartbeat_s
        if not interval or self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat(user, interval))

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat(self, user: UserProfile, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                if not self._is_signed_in_as(user):
                    return
                await self._announce_presence(user, PRESENCE_ONLINE)
        except asyncio.CancelledError:
            return

    def _on_message_snapshot(self, channel_id: str, docs: List[Document]) -> None:
        records, skipped = parse_documents(docs, Message.from_document)
        kept = [record for record in records if record.channel == channel_id]
        foreign = len(records) - len(kept)
        if skipped or foreign:
            logger.warning(
                "ignored documents channel=%s malformed=%d foreign=%d", channel_id, skipped, foreign
            )
        if self._log.apply_snapshot(kept):
            if self._last_search is not None:
                self._last_search = search(self._last_search.term, self._log.messages)
            self._notify_messages()

    def _on_presence_snapshot(self, docs: List[Document]) -> None:
        entries, skipped = parse_documents(docs, PresenceEntry.from_document)
        if skipped:
            logger.warning("ignored malformed presence documents count=%d", skipped)
        if self._presence.apply_snapshot(entries):
            self._notify_presence()

    def _require_signed_in(self, message: str) -> SignedIn:
        state = self._state
        if not isinstance(state, SignedIn):
            raise NotSignedInError(message)
        return state

    def _is_signed_in_as(self, user: UserProfile) -> bool:
        return isinstance(self._state, SignedIn) and self._state.user == user

    def _set_error(self, error: Optional[SessionError]) -> None:
        if error == self._error:
            return
        self._error = error
        self._fire(self._error_listeners, error)

    def _notify_messages(self) -> None:
        self._fire(self._message_listeners, self._log.messages)

    def _notify_presence(self) -> None:
        self._fire(self._presence_listeners, self._presence.sorted_entries())

    @staticmethod
    def _add_listener(listeners: List[Listener], listener: Listener) -> Callable[[], None]:
        listeners.append(listener)

        def remove() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return remove

    @staticmethod
    def _fire(listeners: List[Listener], payload: Any) -> None:
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("read-model listener failed")
