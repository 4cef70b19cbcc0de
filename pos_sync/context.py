"""
Explicitly constructed handles shared by the sync components.

The gateway, drainer, reconciler and subscriber all receive the same
SyncContext instead of reaching for module-level clients.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .field_mapper import FieldMapper
from .offline_queue import OfflineQueue
from .protocol import LocalStore, RemoteStore


@dataclass
class SyncContext:
    """Local store, remote store and the policies around them."""

    config: SyncConfig
    local: LocalStore
    remote: RemoteStore
    connectivity: ConnectivityMonitor
    mapper: FieldMapper
    queue: OfflineQueue = field(init=False)

    def __post_init__(self) -> None:
        self.queue = OfflineQueue(self.local, self.config.queue_table)

    @classmethod
    def create(
        cls,
        config: SyncConfig,
        local: LocalStore,
        remote: RemoteStore,
        connectivity: ConnectivityMonitor | None = None,
    ) -> SyncContext:
        return cls(
            config=config,
            local=local,
            remote=remote,
            connectivity=connectivity or ConnectivityMonitor(config),
            mapper=FieldMapper(config.tenant_table, config.tenant_column),
        )

    async def is_online(self) -> bool:
        return await self.connectivity.is_online()

    async def close(self) -> None:
        await self.remote.close()
        await self.local.close()
