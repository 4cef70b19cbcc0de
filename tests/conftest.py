"""
Shared test configuration and fixtures.

Provides in-memory LocalStore and RemoteStore doubles. The remote double
records every call and can be told to fail specific operations, which is
how tests simulate flaky or absent connectivity.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from typing import Any

import pytest

from pos_sync.config import SyncConfig
from pos_sync.connectivity import ConnectivityMonitor
from pos_sync.context import SyncContext
from pos_sync.exceptions import NetworkError
from pos_sync.protocol import (
    LocalStore,
    Record,
    RemoteChange,
    RemoteChangeHandler,
    RemoteStore,
    Subscription,
)


class InMemoryLocalStore(LocalStore):
    """Local store double keeping tables in dictionaries."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Record]] = {}
        self.writes = 0

    async def get_all(self, table: str) -> list[Record]:
        return [copy.deepcopy(r) for r in self.tables.get(table, {}).values()]

    async def save_items(self, table: str, items: Sequence[Record]) -> None:
        rows = self.tables.setdefault(table, {})
        for item in items:
            rows[item["id"]] = copy.deepcopy(dict(item))
        self.writes += 1

    async def delete_item(self, table: str, item_id: str) -> None:
        self.tables.get(table, {}).pop(item_id, None)
        self.writes += 1

    async def delete_items(self, table: str, item_ids: Sequence[str]) -> None:
        rows = self.tables.get(table, {})
        for item_id in item_ids:
            rows.pop(item_id, None)
        self.writes += 1

    async def clear_store(self, table: str) -> None:
        self.tables[table] = {}

    def ids(self, table: str) -> set[str]:
        return set(self.tables.get(table, {}))


class FakeSubscription(Subscription):
    def __init__(self, table: str, filters: dict[str, Any] | None, handler: RemoteChangeHandler):
        self.table = table
        self.filters = filters
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def close(self) -> None:
        self._active = False


class FakeRemoteStore(RemoteStore):
    """Remote store double with call recording and failure injection."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Record]] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.subscriptions: list[FakeSubscription] = []
        self._failures: dict[str, list[Exception | None]] = {}
        self._always_fail: dict[str, Exception] = {}

    def fail(self, op: str, error: Exception | None = None, times: int | None = None) -> None:
        """Make ``op`` raise ``error``; forever when ``times`` is None."""
        error = error or NetworkError("network request failed")
        if times is None:
            self._always_fail[op] = error
        else:
            self._failures.setdefault(op, []).extend([error] * times)

    def recover(self) -> None:
        self._failures.clear()
        self._always_fail.clear()

    def _maybe_fail(self, op: str) -> None:
        if op in self._always_fail:
            raise self._always_fail[op]
        queued = self._failures.get(op)
        if queued:
            error = queued.pop(0)
            if error is not None:
                raise error

    def seed(self, table: str, rows: Sequence[Record]) -> None:
        target = self.tables.setdefault(table, {})
        for row in rows:
            target[row["id"]] = dict(row)

    def calls_for(self, op: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == op]

    @staticmethod
    def _matches(row: Record, filters: dict[str, Any] | None) -> bool:
        return all(row.get(k) == v for k, v in (filters or {}).items())

    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Record]:
        self.calls.append(("select", table, filters))
        self._maybe_fail("select")
        return [dict(r) for r in self.tables.get(table, {}).values() if self._matches(r, filters)]

    async def upsert(self, table: str, rows: Sequence[Record], on_conflict: str = "id") -> None:
        self.calls.append(("upsert", table, [dict(r) for r in rows]))
        self._maybe_fail("upsert")
        target = self.tables.setdefault(table, {})
        for row in rows:
            target[row[on_conflict]] = dict(row)

    async def delete(self, table: str, ids: Sequence[str]) -> None:
        self.calls.append(("delete", table, list(ids)))
        self._maybe_fail("delete")
        target = self.tables.get(table, {})
        for item_id in ids:
            target.pop(item_id, None)

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        self.calls.append(("count", table, filters))
        self._maybe_fail("count")
        return sum(1 for r in self.tables.get(table, {}).values() if self._matches(r, filters))

    async def subscribe(
        self,
        table: str,
        filters: dict[str, Any] | None,
        handler: RemoteChangeHandler,
    ) -> Subscription:
        self.calls.append(("subscribe", table, filters))
        subscription = FakeSubscription(table, filters, handler)
        self.subscriptions.append(subscription)
        return subscription

    async def emit(self, change: RemoteChange) -> None:
        """Deliver a change to every active subscription on its table."""
        for subscription in self.subscriptions:
            if subscription.active and subscription.table == change.table:
                await subscription.handler(change)


@pytest.fixture
def config() -> SyncConfig:
    """Config with a configured remote and no backoff delays."""
    return SyncConfig(
        cosmos_endpoint="https://test.documents.azure.com:443/",
        cosmos_key="test-key",
        retry_attempts=2,
        retry_base_delay=0.0,
        attempt_timeout=5.0,
        auth_timeout=0.5,
        auto_sync_interval=3600,
    )


@pytest.fixture
def local() -> InMemoryLocalStore:
    return InMemoryLocalStore()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def context(config, local, remote) -> SyncContext:
    """Context pinned online; tests flip it with context.connectivity.set_online."""
    connectivity = ConnectivityMonitor(config)
    connectivity.set_online(True)
    return SyncContext.create(config, local=local, remote=remote, connectivity=connectivity)
