"""
Queue drainer: replays the offline queue against the remote store.

Entries are grouped into one batch per (table, action) pair so a long
offline period costs one round trip per pair instead of one per mutation.
Each batch succeeds or fails on its own; a failed batch charges a retry
to every entry in it, and entries that exhaust their budget are
dead-lettered so one poisoned row cannot block the queue forever.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .context import SyncContext
from .offline_queue import QueueAction, QueueEntry
from .protocol import Record

logger = logging.getLogger(__name__)

DeadLetterCallback = Callable[[QueueEntry], None]


@dataclass
class QueueBatch:
    """Entries submitted together in one remote call.

    ``entries`` are the winners, one per record id, whose payloads are
    sent. ``superseded`` are older entries for the same records; they are
    not sent but share the batch outcome.
    """

    table: str
    action: QueueAction
    entries: list[QueueEntry] = field(default_factory=list)
    superseded: list[QueueEntry] = field(default_factory=list)

    @property
    def contributing(self) -> list[QueueEntry]:
        return self.entries + self.superseded

    @property
    def payloads(self) -> list[Record]:
        return [e.payload for e in self.entries]

    @property
    def ids(self) -> list[str]:
        return [e.payload["id"] for e in self.entries]


@dataclass
class DrainResult:
    """Result of one sync_pending run."""

    skipped: str | None = None
    batches: int = 0
    confirmed: int = 0
    retried: int = 0
    dropped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.skipped is None and not self.errors


def build_batches(entries: list[QueueEntry]) -> list[QueueBatch]:
    """Group entries by (table, action) after coalescing per record.

    For each (table, record id) only the newest entry is sent; it carries
    the final state under last-writer-wins. Entries must be sorted by
    enqueue time.
    """
    latest: dict[tuple[str, str], QueueEntry] = {}
    anonymous: list[QueueEntry] = []
    for entry in entries:
        if entry.record_id is None:
            anonymous.append(entry)
        else:
            latest[(entry.table, entry.record_id)] = entry

    batches: dict[tuple[str, QueueAction], QueueBatch] = {}

    def batch_for(entry: QueueEntry) -> QueueBatch:
        key = (entry.table, entry.action)
        if key not in batches:
            batches[key] = QueueBatch(table=entry.table, action=entry.action)
        return batches[key]

    for entry in entries:
        if entry.record_id is None:
            continue
        winner = latest[(entry.table, entry.record_id)]
        if winner is entry:
            batch_for(entry).entries.append(entry)

    for entry in entries:
        if entry.record_id is None:
            continue
        winner = latest[(entry.table, entry.record_id)]
        if winner is not entry:
            batch_for(winner).superseded.append(entry)

    for entry in anonymous:
        # Nothing can be sent without an id; let the dead-letter policy age it out
        batch_for(entry).superseded.append(entry)

    return list(batches.values())


class QueueDrainer:
    """Replays queued mutations; safe to call on every reconnect and timer tick."""

    def __init__(
        self,
        context: SyncContext,
        on_dead_letter: DeadLetterCallback | None = None,
    ) -> None:
        self.ctx = context
        self.on_dead_letter = on_dead_letter
        self._in_flight = False

    @property
    def max_retries(self) -> int:
        return self.ctx.config.max_queue_retries

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def sync_pending(self) -> DrainResult:
        """Drain the offline queue once.

        Returns:
            DrainResult describing what happened
        """
        if self._in_flight:
            return DrainResult(skipped="drain already in progress")

        self._in_flight = True
        try:
            return await self._drain()
        finally:
            self._in_flight = False

    async def _drain(self) -> DrainResult:
        if not await self.ctx.is_online():
            return DrainResult(skipped="offline")

        entries = await self.ctx.queue.entries()
        if not entries:
            return DrainResult(skipped="queue empty")

        logger.info(f"Processing {len(entries)} pending operations")
        batches = build_batches(entries)

        by_table: dict[str, list[QueueBatch]] = {}
        for batch in batches:
            by_table.setdefault(batch.table, []).append(batch)

        outcomes = await asyncio.gather(
            *(self._run_table(table_batches) for table_batches in by_table.values())
        )

        result = DrainResult(batches=len(batches))
        confirmed: list[QueueEntry] = []
        failed: list[QueueEntry] = []
        for table_outcomes in outcomes:
            for batch, error in table_outcomes:
                if error is None:
                    confirmed.extend(batch.contributing)
                else:
                    for entry in batch.contributing:
                        entry.last_error = error
                    failed.extend(batch.contributing)
                    result.errors.append(f"{batch.action.value} {batch.table}: {error}")

        retried, dropped = self._apply_dead_letter_policy(failed)

        # A direct write may have discarded some of these entries mid-drain
        await self.ctx.queue.remove(confirmed)
        dropped = await self.ctx.queue.remove(dropped)
        retried = await self.ctx.queue.update(retried)

        for entry in dropped:
            logger.error(
                f"Dropping queue entry {entry.id} ({entry.action.value} {entry.table}/"
                f"{entry.record_id}) after {entry.retry_count} failed attempts",
                extra={"entry_id": entry.id, "table": entry.table},
            )
            if self.on_dead_letter:
                self.on_dead_letter(entry)

        result.confirmed = len(confirmed)
        result.retried = len(retried)
        result.dropped = len(dropped)
        return result

    async def _run_table(
        self, batches: list[QueueBatch]
    ) -> list[tuple[QueueBatch, str | None]]:
        """Submit one table's batches in order, each independently."""
        outcomes: list[tuple[QueueBatch, str | None]] = []
        for batch in batches:
            outcomes.append((batch, await self._submit(batch)))
        return outcomes

    async def _submit(self, batch: QueueBatch) -> str | None:
        if not batch.entries:
            return "no sendable entries"
        try:
            if batch.action == QueueAction.UPSERT:
                await self.ctx.remote.upsert(batch.table, batch.payloads, on_conflict="id")
            else:
                await self.ctx.remote.delete(batch.table, batch.ids)
        except Exception as e:
            logger.error(f"Batch {batch.action.value} failed for {batch.table}: {e}")
            return str(e) or type(e).__name__
        return None

    def _apply_dead_letter_policy(
        self, failed: list[QueueEntry]
    ) -> tuple[list[QueueEntry], list[QueueEntry]]:
        retried: list[QueueEntry] = []
        dropped: list[QueueEntry] = []
        for entry in failed:
            entry.retry_count += 1
            if entry.retry_count > self.max_retries:
                dropped.append(entry)
            else:
                retried.append(entry)
        return retried, dropped
