from __future__ import annotations

from typing import Any


class ChatSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class TransientNetworkError(ChatSyncError):
    """The remote store could not be reached; the user may retry."""


class ValidationError(ChatSyncError):
    """Local input rejected before anything reaches the remote store."""


class NotSignedInError(ChatSyncError):
    pass


class SubscriptionConflictError(ChatSyncError):
    """A notification arrived for a handle that is no longer the live one."""

    def __init__(self, topic: Any, generation: int) -> None:
        self.topic = topic
        self.generation = generation
        super().__init__(f"handle generation {generation} for {topic!r} has been superseded")


class SubscriptionFailedError(ChatSyncError):
    """The remote store refused to open a subscription."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(message or code)


class WriteAcknowledgmentError(ChatSyncError):
    """The remote store rejected a write (permission, quota, bad record)."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(message or code)
