from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from .models import Message

ENTER_TERM = "enter_term"
NO_RESULTS = "no_results"
MATCHES = "matches"


@dataclass(frozen=True)
class SearchResult:
    term: str
    state: str
    messages: Tuple[Message, ...] = ()

    @property
    def has_matches(self) -> bool:
        return self.state == MATCHES


def search(term: str, log: Iterable[Message]) -> SearchResult:
    """Case-insensitive substring match on text or author name, in log order.

    A blank term is not a query; it yields the ``ENTER_TERM`` state rather
    than an empty match list.
    """

    needle = (term or "").strip().lower()
    if not needle:
        return SearchResult(term=term or "", state=ENTER_TERM)
    found = tuple(
        message
        for message in log
        if needle in message.text.lower() or needle in message.author_display_name.lower()
    )
    return SearchResult(term=term, state=MATCHES if found else NO_RESULTS, messages=found)
