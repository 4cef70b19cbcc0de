"""
Offline-first sync engine.

Wires the gateway, queue drainer, diagnostics reconciler and change
subscriber around one SyncContext, and runs the background loop that
drains the offline queue on a timer and whenever connectivity returns.

Example:
    >>> config = SyncConfig.from_environment()
    >>> async with OfflineSyncEngine(config) as engine:
    ...     products = await engine.fetch("products", tenant="BIZ-1")
    ...     await engine.upsert("products", {"id": "p1", "name": "Widget"}, tenant="BIZ-1")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .context import SyncContext
from .diagnostics import DiagnosticsReconciler, SyncDiagnostic
from .drainer import DeadLetterCallback, DrainResult, QueueDrainer
from .gateway import AuthResult, SyncGateway
from .local import JsonFileLocalStore
from .protocol import LocalStore, Record, RemoteStore, Subscription
from .remote import CosmosRemoteStore
from .subscriber import ChangeCallback, ChangeSubscriber

logger = logging.getLogger(__name__)


class OfflineSyncEngine:
    """Facade over the sync components with a background drain loop.

    Architecture:
    - Writes go to LOCAL first (immediate, always available)
    - Remote confirmation is attempted inline; failures are queued
    - The background loop drains the queue every ``auto_sync_interval``
      seconds and immediately after ``notify_online``
    - Live subscriptions mirror other terminals' changes locally
    """

    def __init__(
        self,
        config: SyncConfig,
        local: LocalStore | None = None,
        remote: RemoteStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        on_dead_letter: DeadLetterCallback | None = None,
    ) -> None:
        self.config = config
        self.context = SyncContext.create(
            config,
            local=local or JsonFileLocalStore(config.resolved_local_path),
            remote=remote or CosmosRemoteStore(config),
            connectivity=connectivity,
        )
        self.gateway = SyncGateway(self.context)
        self.drainer = QueueDrainer(self.context, on_dead_letter=on_dead_letter)
        self.diagnostics = DiagnosticsReconciler(self.context)
        self.subscriber = ChangeSubscriber(self.context)

        self._sync_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Drain anything left from the last run and start the background loop."""
        if self._running:
            return
        self._running = True

        await self.sync_pending()
        self._sync_task = asyncio.create_task(self._sync_loop())
        logger.info("Offline sync engine started")

    async def stop(self) -> None:
        """Stop background sync and close subscriptions and stores."""
        self._running = False

        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

        await self.subscriber.close()
        await self.context.close()
        logger.info("Offline sync engine stopped")

    async def __aenter__(self) -> OfflineSyncEngine:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    def notify_online(self) -> None:
        """Connectivity came back: mark online and drain right away."""
        self.context.connectivity.set_online(True)
        self._wake.set()

    def notify_offline(self) -> None:
        """Connectivity was lost: skip remote calls until notified again."""
        self.context.connectivity.set_online(False)

    async def _sync_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.auto_sync_interval)
            except TimeoutError:
                pass
            self._wake.clear()

            try:
                result = await self.sync_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background drain failed")
                continue

            if result.confirmed or result.dropped:
                logger.info(
                    f"Background drain: {result.confirmed} confirmed, "
                    f"{result.retried} retried, {result.dropped} dropped"
                )

    # =========================================================================
    # Operations
    # =========================================================================

    async def fetch(self, table: str, tenant: str | None = None) -> list[Record]:
        return await self.gateway.fetch(table, tenant)

    async def upsert(self, table: str, record: Record, tenant: str | None = None) -> bool:
        return await self.gateway.upsert(table, record, tenant)

    async def upsert_many(
        self, table: str, records: Sequence[Record], tenant: str | None = None
    ) -> bool:
        return await self.gateway.upsert_many(table, records, tenant)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self.gateway.delete(table, record_id)

    async def authenticate(self, email: str, password: str) -> AuthResult:
        return await self.gateway.authenticate(email, password)

    async def sync_pending(self) -> DrainResult:
        return await self.drainer.sync_pending()

    async def get_sync_diagnostics(self, tenant: str) -> list[SyncDiagnostic]:
        return await self.diagnostics.get_sync_diagnostics(tenant)

    async def subscribe_to_changes(
        self,
        tables: list[str],
        tenant: str,
        on_change: ChangeCallback | None = None,
    ) -> dict[str, Subscription]:
        return await self.subscriber.subscribe_to_changes(tables, tenant, on_change)

    async def pending_count(self, table: str | None = None) -> int:
        return await self.context.queue.count(table)
