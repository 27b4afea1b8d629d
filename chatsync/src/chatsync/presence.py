from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional

from .models import PresenceEntry


class PresenceSet:
    """Users currently online other than the local user, keyed by ``user_id``.

    Each snapshot replaces the whole set; nothing is merged or aged out here.
    """

    def __init__(self, self_user_id: Optional[str] = None) -> None:
        self.self_user_id = self_user_id
        self._entries: Dict[str, PresenceEntry] = {}

    @property
    def entries(self) -> Dict[str, PresenceEntry]:
        return dict(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PresenceEntry]:
        return iter(self.sorted_entries())

    def sorted_entries(self) -> List[PresenceEntry]:
        return sorted(self._entries.values(), key=lambda entry: (entry.display_name.lower(), entry.user_id))

    def apply_snapshot(self, entries: Iterable[PresenceEntry]) -> bool:
        """Replace the set; return whether the visible set changed."""

        updated: Dict[str, PresenceEntry] = {}
        for entry in entries:
            if entry.user_id == self.self_user_id:
                continue
            updated[entry.user_id] = entry
        if updated == self._entries:
            return False
        self._entries = updated
        return True

    def clear(self) -> bool:
        changed = bool(self._entries)
        self._entries = {}
        return changed
