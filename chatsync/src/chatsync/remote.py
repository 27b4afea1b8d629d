"""Contract between the sync engine and the remote document store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

Document = Dict[str, Any]
SnapshotCallback = Callable[[List[Document]], None]
ErrorCallback = Callable[[Exception], None]

ASCENDING = "asc"
DESCENDING = "desc"


@dataclass(frozen=True)
class FieldFilter:
    """Equality filter ``field == value``."""

    field: str
    value: Any

    def matches(self, doc: Document) -> bool:
        return doc.get(self.field) == self.value

    def to_wire(self) -> Dict[str, Any]:
        return {"field": self.field, "value": self.value}


@dataclass(frozen=True)
class SortSpec:
    field: str
    direction: str = ASCENDING

    def to_wire(self) -> Dict[str, Any]:
        return {"field": self.field, "direction": self.direction}


class RemoteSubscription(Protocol):
    def cancel(self) -> None:
        """Stop deliveries; safe to call more than once."""


class RemoteChannel(Protocol):
    async def write(self, collection: str, record: Document) -> Document:
        """Append ``record``; resolves with the stored document (``id``, ``ts_ms``)."""

    async def set(self, collection: str, doc_id: str, record: Document) -> Document:
        """Create or replace the document ``doc_id``."""

    async def subscribe(
        self,
        collection: str,
        where: FieldFilter,
        order_by: Optional[SortSpec],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> RemoteSubscription:
        """Deliver the full matching result set now and after every relevant change.

        ``on_error`` is called once if the subscription ends without being
        cancelled, e.g. because the connection to the store was lost.
        """
