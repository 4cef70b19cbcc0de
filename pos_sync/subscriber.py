"""
Live change subscriber.

Mirrors inserts, updates and deletes made by other terminals into the
local store. Every applied change is published as a ChangeEvent, both to
an optional callback and to a channel consumed with ``events()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .context import SyncContext
from .logging_utils import SyncLoggerAdapter
from .protocol import ChangeKind, Record, RemoteChange, Subscription

logger = logging.getLogger(__name__)

# Events kept for events() consumers; the oldest is dropped beyond this
DEFAULT_CHANNEL_SIZE = 256


@dataclass
class ChangeEvent:
    """A remote change after translation to local field naming."""

    table: str
    kind: ChangeKind
    data: Record


ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


class ChangeSubscriber:
    """Keeps the local store eventually consistent with remote changes."""

    def __init__(self, context: SyncContext, channel_size: int = DEFAULT_CHANNEL_SIZE) -> None:
        if channel_size < 1:
            raise ValueError("channel_size must be >= 1")
        self.ctx = context
        self._subscriptions: dict[str, Subscription] = {}
        self._channel: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=channel_size)
        self._dropped_events = 0
        self._closed = False

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    @property
    def backlog(self) -> int:
        """Events waiting for an events() consumer."""
        return self._channel.qsize()

    @property
    def dropped_events(self) -> int:
        return self._dropped_events

    async def subscribe_to_changes(
        self,
        tables: list[str],
        tenant: str,
        on_change: ChangeCallback | None = None,
    ) -> dict[str, Subscription]:
        """Open one tenant-scoped subscription per table.

        Returns:
            Mapping of table name to its subscription handle
        """
        handles: dict[str, Subscription] = {}
        for table in tables:
            existing = self._subscriptions.pop(table, None)
            if existing is not None:
                await existing.close()

            handler = self._make_handler(table, tenant, on_change)
            subscription = await self.ctx.remote.subscribe(
                table, self.ctx.mapper.remote_tenant_filter(table, tenant), handler
            )
            self._subscriptions[table] = subscription
            handles[table] = subscription
            logger.info(f"Subscribed to changes on {table} for tenant {tenant}")
        return handles

    def _make_handler(
        self, table: str, tenant: str, on_change: ChangeCallback | None
    ) -> Callable[[RemoteChange], Awaitable[None]]:
        log = SyncLoggerAdapter(logger, {"table": table, "tenant": tenant})

        async def handle(change: RemoteChange) -> None:
            try:
                event = await self._apply(table, tenant, change)
            except Exception:
                log.bind(kind=change.kind).exception(
                    f"Failed to apply {change.kind.value} on {table}"
                )
                return
            if event is None:
                return

            self._publish(event)
            if on_change is not None:
                outcome = on_change(event)
                if inspect.isawaitable(outcome):
                    await outcome

        return handle

    async def _apply(self, table: str, tenant: str, change: RemoteChange) -> ChangeEvent | None:
        mapper = self.ctx.mapper
        data = mapper.to_local(table, change.row)
        record_id = data.get("id")
        if not record_id:
            logger.debug(f"Ignoring {change.kind.value} on {table} without an id")
            return None

        owner = mapper.tenant_of(table, data)
        if owner is not None and owner != tenant:
            logger.debug(f"Ignoring {change.kind.value} on {table} for foreign tenant")
            return None

        if change.kind == ChangeKind.DELETE:
            await self.ctx.local.delete_item(table, record_id)
        else:
            await self.ctx.local.save_items(table, [data])
        return ChangeEvent(table=table, kind=change.kind, data=data)

    def _publish(self, event: ChangeEvent | None) -> None:
        if self._channel.full():
            self._channel.get_nowait()
            self._dropped_events += 1
            if self._dropped_events == 1 or self._dropped_events % 1000 == 0:
                logger.warning(
                    f"Change event channel full, dropped {self._dropped_events} oldest "
                    "event(s); consume events() or rely on the on_change callback"
                )
        self._channel.put_nowait(event)

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Yield applied changes until the subscriber is closed."""
        while True:
            event = await self._channel.get()
            if event is None:
                return
            yield event

    async def unsubscribe(self, table: str) -> None:
        subscription = self._subscriptions.pop(table, None)
        if subscription is not None:
            await subscription.close()

    async def close(self) -> None:
        """Close every subscription and end the event channel."""
        for table in list(self._subscriptions):
            await self.unsubscribe(table)
        if not self._closed:
            self._closed = True
            self._publish(None)

    async def __aenter__(self) -> ChangeSubscriber:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
