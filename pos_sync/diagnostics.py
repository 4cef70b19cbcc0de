"""
Sync diagnostics: local versus cloud row counts per table.

Read-only. Diagnostics are computed fresh on every request and never
stored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from .context import SyncContext

logger = logging.getLogger(__name__)


class DiagnosticStatus(Enum):
    """Sync status of one table."""

    SYNCED = "Synced"
    DISCREPANCY = "Discrepancy"
    OFFLINE = "Offline"
    ERROR = "Error"


@dataclass
class SyncDiagnostic:
    """Count comparison for one table."""

    table: str
    local_count: int
    cloud_count: int | None
    status: DiagnosticStatus
    pending_actions: int
    error: str | None = None


class DiagnosticsReconciler:
    """Compares local and remote row counts for the tracked tables."""

    def __init__(self, context: SyncContext) -> None:
        self.ctx = context

    async def get_sync_diagnostics(
        self, tenant: str, tables: list[str] | None = None
    ) -> list[SyncDiagnostic]:
        """Report per-table sync status plus queue backlog for a tenant."""
        tables = list(tables or self.ctx.config.tracked_tables)
        online = await self.ctx.is_online()
        queued = await self.ctx.queue.entries()

        return list(
            await asyncio.gather(
                *(
                    self._diagnose(
                        table,
                        tenant,
                        online,
                        pending=sum(1 for e in queued if e.table == table),
                    )
                    for table in tables
                )
            )
        )

    async def _diagnose(
        self, table: str, tenant: str, online: bool, pending: int
    ) -> SyncDiagnostic:
        mapper = self.ctx.mapper
        local_rows = await self.ctx.local.get_all(table)
        local_count = sum(1 for r in local_rows if mapper.tenant_of(table, r) == tenant)

        if not online:
            return SyncDiagnostic(table, local_count, None, DiagnosticStatus.OFFLINE, pending)

        try:
            cloud_count = await self.ctx.remote.count(
                table, mapper.remote_tenant_filter(table, tenant)
            )
        except Exception as e:
            logger.warning(f"Remote count failed for {table}: {e}")
            return SyncDiagnostic(
                table, local_count, None, DiagnosticStatus.ERROR, pending, error=str(e)
            )

        status = (
            DiagnosticStatus.SYNCED if cloud_count == local_count else DiagnosticStatus.DISCREPANCY
        )
        return SyncDiagnostic(table, local_count, cloud_count, status, pending)
