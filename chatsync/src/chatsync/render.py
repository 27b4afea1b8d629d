"""Read model to markup/text mapping. Every user-supplied string is escaped."""

from __future__ import annotations

import datetime as dt
from html import escape
from typing import Iterable, Optional, Sequence

from .models import STATUS_CONFIRMED, STATUS_FAILED, STATUS_PENDING, Message, PresenceEntry
from .search import ENTER_TERM, NO_RESULTS, SearchResult

NO_MESSAGES_TEXT = "No messages yet. Start the conversation!"
SIGNED_OUT_TEXT = "Sign in to join the conversation!"
NO_USERS_TEXT = "No users online"
ENTER_TERM_TEXT = "Enter a search term to find messages"
NO_RESULTS_TEXT = "No messages found matching your search"
PENDING_TIME_TEXT = "Just now"
FALLBACK_AVATAR = "img/good.png"


def format_time(sent_at: Optional[int], tz: Optional[dt.tzinfo] = None) -> str:
    if sent_at is None:
        return PENDING_TIME_TEXT
    return dt.datetime.fromtimestamp(sent_at / 1000, tz=tz).strftime("%H:%M")


def _no_results(text: str) -> str:
    return f'<div class="no-results">{escape(text)}</div>'


def render_message(message: Message, self_user_id: Optional[str] = None, tz: Optional[dt.tzinfo] = None) -> str:
    direction = "sent" if self_user_id is not None and message.author_id == self_user_id else "received"
    classes = ["message", direction]
    if message.status in {STATUS_PENDING, STATUS_FAILED}:
        classes.append(message.status)
    name = escape(message.author_display_name)
    avatar = escape(message.author_avatar_url or FALLBACK_AVATAR)
    return (
        f'<div class="{" ".join(classes)}">'
        f'<div class="message-avatar"><img src="{avatar}" alt="{name}"></div>'
        '<div class="message-content">'
        f'<div class="message-sender">{name}</div>'
        f'<div class="message-text">{escape(message.text)}</div>'
        f'<div class="message-time">{escape(format_time(message.sent_at, tz))}</div>'
        "</div></div>"
    )


def render_message_log(
    messages: Sequence[Message],
    self_user_id: Optional[str] = None,
    *,
    signed_in: bool = True,
    tz: Optional[dt.tzinfo] = None,
) -> str:
    if not signed_in:
        return _no_results(SIGNED_OUT_TEXT)
    if not messages:
        return _no_results(NO_MESSAGES_TEXT)
    return "".join(render_message(message, self_user_id, tz) for message in messages)


def render_presence(entries: Iterable[PresenceEntry]) -> str:
    items = []
    for entry in entries:
        name = escape(entry.display_name)
        items.append(
            '<li class="person-item">'
            f'<div class="person-avatar"><img src="{escape(entry.avatar_url or FALLBACK_AVATAR)}" alt="{name}"></div>'
            f'<div class="person-info"><h4>{name}</h4><p>{escape(entry.email)}</p>'
            '<div class="person-status"><div class="person-status-dot online"></div><span>Online</span></div>'
            "</div></li>"
        )
    if not items:
        return _no_results(NO_USERS_TEXT)
    return "".join(items)


def render_search(result: SearchResult, tz: Optional[dt.tzinfo] = None) -> str:
    if result.state == ENTER_TERM:
        return _no_results(ENTER_TERM_TEXT)
    if result.state == NO_RESULTS:
        return _no_results(NO_RESULTS_TEXT)
    return "".join(
        '<div class="search-result-item">'
        f'<div class="search-result-sender">{escape(message.author_display_name)}</div>'
        f'<div class="search-result-text">{escape(message.text)}</div>'
        f'<div class="message-time">{escape(format_time(message.sent_at, tz))}</div>'
        "</div>"
        for message in result.messages
    )


def message_line(message: Message, tz: Optional[dt.tzinfo] = None) -> str:
    """Plain one-line rendering used by the simulator output."""

    suffix = f" ({message.status})" if message.status != STATUS_CONFIRMED else ""
    return f"[{format_time(message.sent_at, tz)}] {message.author_display_name}: {message.text}{suffix}"
