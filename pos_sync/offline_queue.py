"""
Durable queue of mutations awaiting confirmation by the remote store.

Entries live in the local store under a reserved table, so they survive
restarts. An entry exists exactly as long as its mutation is unconfirmed.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .protocol import LocalStore, Record


class QueueAction(Enum):
    """Kind of deferred mutation."""

    UPSERT = "UPSERT"
    DELETE = "DELETE"


def new_entry_id() -> str:
    """Generate a unique, roughly time-ordered queue entry id."""
    return f"Q-{time.time_ns()}-{secrets.token_hex(4)}"


@dataclass
class QueueEntry:
    """One deferred mutation.

    Attributes:
        id: Unique identifier for this entry
        table: Remote table the mutation targets
        action: UPSERT or DELETE
        payload: Remote-shaped row (UPSERT) or ``{"id": ...}`` (DELETE)
        enqueued_at: When the mutation was deferred
        retry_count: Failed drain attempts so far
        last_error: Last error message if a drain failed
    """

    table: str
    action: QueueAction
    payload: Record
    id: str = field(default_factory=new_entry_id)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = 0
    last_error: str | None = None

    @property
    def record_id(self) -> str | None:
        return self.payload.get("id")

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.enqueued_at, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "table": self.table,
            "action": self.action.value,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at.isoformat(),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        """Create from dictionary."""
        enqueued_at = data.get("enqueued_at")
        if isinstance(enqueued_at, str):
            enqueued_at = datetime.fromisoformat(enqueued_at)
        elif enqueued_at is None:
            enqueued_at = datetime.now(UTC)
        if enqueued_at.tzinfo is None:
            enqueued_at = enqueued_at.replace(tzinfo=UTC)

        return cls(
            id=data["id"],
            table=data["table"],
            action=QueueAction(data["action"]),
            payload=dict(data.get("payload") or {}),
            enqueued_at=enqueued_at,
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
        )


class OfflineQueue:
    """Ordered view over the queue table in the local store.

    Every mutation runs under one lock, so a drain writing back retry state
    and a direct write discarding the same entry cannot interleave.
    """

    def __init__(self, local: LocalStore, table: str = "offline_queue") -> None:
        self.local = local
        self.table = table
        self._lock = asyncio.Lock()

    async def enqueue(self, table: str, action: QueueAction, payload: Record) -> QueueEntry:
        entry = QueueEntry(table=table, action=action, payload=dict(payload))
        async with self._lock:
            await self.local.save_items(self.table, [entry.to_dict()])
        return entry

    async def enqueue_many(
        self, table: str, action: QueueAction, payloads: Sequence[Record]
    ) -> list[QueueEntry]:
        entries = [QueueEntry(table=table, action=action, payload=dict(p)) for p in payloads]
        if entries:
            async with self._lock:
                await self.local.save_items(self.table, [e.to_dict() for e in entries])
        return entries

    async def entries(self) -> list[QueueEntry]:
        """All entries in ascending enqueue order."""
        rows = await self.local.get_all(self.table)
        return sorted((QueueEntry.from_dict(r) for r in rows), key=lambda e: e.sort_key)

    async def save(self, entries: Sequence[QueueEntry]) -> None:
        if entries:
            async with self._lock:
                await self.local.save_items(self.table, [e.to_dict() for e in entries])

    async def update(self, entries: Sequence[QueueEntry]) -> list[QueueEntry]:
        """Write back entries that are still queued.

        Entries removed since they were read stay removed.

        Returns:
            The entries that were written
        """
        if not entries:
            return []
        async with self._lock:
            present = await self._ids()
            live = [e for e in entries if e.id in present]
            if live:
                await self.local.save_items(self.table, [e.to_dict() for e in live])
        return live

    async def remove(self, entries: Sequence[QueueEntry]) -> list[QueueEntry]:
        """Delete entries.

        Returns:
            The entries that were still queued
        """
        if not entries:
            return []
        async with self._lock:
            present = await self._ids()
            await self.local.delete_items(self.table, [e.id for e in entries])
        return [e for e in entries if e.id in present]

    async def _ids(self) -> set[str]:
        return {r["id"] for r in await self.local.get_all(self.table) if "id" in r}

    async def count(self, table: str | None = None) -> int:
        rows = await self.local.get_all(self.table)
        if table is None:
            return len(rows)
        return sum(1 for r in rows if r.get("table") == table)

    async def pending_record_ids(self, table: str) -> dict[str, QueueAction]:
        """Latest pending action per record id for one table."""
        latest: dict[str, QueueAction] = {}
        for entry in await self.entries():
            if entry.table == table and entry.record_id is not None:
                latest[entry.record_id] = entry.action
        return latest

    async def clear(self) -> int:
        async with self._lock:
            count = await self.count()
            await self.local.clear_store(self.table)
        return count
