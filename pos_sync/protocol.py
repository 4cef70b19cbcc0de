"""
Store contracts for the offline sync engine.

The engine talks to two collaborators it does not own:

- LocalStore: durable on-device tables of records keyed by ``id``.
- RemoteStore: the hosted database, source of truth when reachable.

Both are abstract so terminals can plug in real backends and tests can
plug in doubles.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# A record is an opaque mapping that must carry a unique string "id"
Record = dict[str, Any]


class ChangeKind(Enum):
    """Kind of change pushed by a remote change stream."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class RemoteChange:
    """A raw change notification as delivered by the remote store.

    ``new`` holds the row after the change (insert/update), ``old`` the row
    before it (delete). Rows use the remote column naming.
    """

    table: str
    kind: ChangeKind
    new: Record = field(default_factory=dict)
    old: Record = field(default_factory=dict)

    @property
    def row(self) -> Record:
        return self.old if self.kind == ChangeKind.DELETE and self.old else self.new


RemoteChangeHandler = Callable[[RemoteChange], Awaitable[None]]


class Subscription(ABC):
    """Handle for one live change subscription."""

    table: str

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving changes. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the subscription is still delivering changes."""
        ...


class LocalStore(ABC):
    """Durable key-addressed tables used as the offline cache."""

    @abstractmethod
    async def get_all(self, table: str) -> list[Record]:
        """Return every record in a table (empty if the table is unknown)."""
        ...

    @abstractmethod
    async def save_items(self, table: str, items: Sequence[Record]) -> None:
        """Upsert records by ``id`` in a single write."""
        ...

    @abstractmethod
    async def delete_item(self, table: str, item_id: str) -> None:
        """Remove one record. Removing an absent id is not an error."""
        ...

    @abstractmethod
    async def clear_store(self, table: str) -> None:
        """Remove every record in a table."""
        ...

    async def delete_items(self, table: str, item_ids: Sequence[str]) -> None:
        """Remove several records.

        Backends that can do this in one write should override it.
        """
        for item_id in item_ids:
            await self.delete_item(table, item_id)

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class RemoteStore(ABC):
    """Queryable, mutable remote tables.

    Implementations raise ``NetworkError`` for transport failures and
    ``RemoteStoreError``/``ServerError`` for rejected or failed requests.
    """

    @abstractmethod
    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Record]:
        """Return rows whose columns equal every value in ``filters``."""
        ...

    @abstractmethod
    async def upsert(
        self, table: str, rows: Sequence[Record], on_conflict: str = "id"
    ) -> None:
        """Insert or replace rows keyed by ``on_conflict``."""
        ...

    @abstractmethod
    async def delete(self, table: str, ids: Sequence[str]) -> None:
        """Delete rows by id. Absent ids are ignored."""
        ...

    @abstractmethod
    async def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        """Return the exact number of rows matching ``filters``."""
        ...

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        filters: dict[str, Any] | None,
        handler: RemoteChangeHandler,
    ) -> Subscription:
        """Deliver changes to rows matching ``filters`` to ``handler``."""
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
