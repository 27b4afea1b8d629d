"""Real-time channel synchronization engine for a group chat client."""

from .errors import (
    ChatSyncError,
    NotSignedInError,
    SubscriptionConflictError,
    SubscriptionFailedError,
    TransientNetworkError,
    ValidationError,
    WriteAcknowledgmentError,
)
from .memory import InMemoryRemoteChannel
from .message_log import MessageLog
from .models import ChannelMessagesTopic, Message, PresenceEntry, PresenceTopic, UserProfile
from .presence import PresenceSet
from .search import SearchResult
from .session import ChatSession, SessionConfig, SessionError, SignedIn, SignedOut
from .store import DocumentStore, StoreConfig
from .subscriptions import SubscriptionHandle, SubscriptionManager

__all__ = [
    "ChatSyncError",
    "NotSignedInError",
    "SubscriptionConflictError",
    "SubscriptionFailedError",
    "TransientNetworkError",
    "ValidationError",
    "WriteAcknowledgmentError",
    "InMemoryRemoteChannel",
    "MessageLog",
    "ChannelMessagesTopic",
    "Message",
    "PresenceEntry",
    "PresenceTopic",
    "UserProfile",
    "PresenceSet",
    "SearchResult",
    "ChatSession",
    "SessionConfig",
    "SessionError",
    "SignedIn",
    "SignedOut",
    "DocumentStore",
    "StoreConfig",
    "SubscriptionHandle",
    "SubscriptionManager",
]
