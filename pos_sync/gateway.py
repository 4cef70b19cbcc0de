"""
Sync gateway: the application's single entry point for table data.

Read policy is cloud-first, local-fallback. Write policy is local-first,
cloud-confirm: every write lands in the local store before the remote
store is tried, and a remote failure defers the mutation to the offline
queue instead of failing the call.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .context import SyncContext
from .exceptions import (
    AuthFailedError,
    EmailNotFoundError,
    ErrorCode,
    OfflineError,
    SyncStorageError,
    ValidationError,
)
from .offline_queue import QueueAction
from .protocol import Record
from .retry import RetryConfig, is_retryable, retry_with_backoff, with_deadline

logger = logging.getLogger(__name__)

UPDATED_AT_FIELD = "updatedAt"


@dataclass
class AuthResult:
    """Outcome of an authenticate call."""

    success: bool
    user: Record | None = None
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def failure(cls, error: Exception) -> AuthResult:
        if isinstance(error, SyncStorageError):
            return cls(success=False, error=error.message, code=error.code)
        code = ErrorCode.NETWORK_ERROR if is_retryable(error) else ErrorCode.SERVER_ERROR
        return cls(success=False, error=str(error), code=code)


class SyncGateway:
    """Orchestrates reads and writes across the local and remote stores."""

    def __init__(self, context: SyncContext) -> None:
        self.ctx = context
        config = context.config
        self.retry_config = RetryConfig(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            attempt_timeout=config.attempt_timeout,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def fetch(self, table: str, tenant: str | None = None) -> list[Record]:
        """Return a table's records, scoped to ``tenant`` when given.

        Fetches from the remote store when reachable and refreshes the local
        cache; otherwise (or on any remote failure) serves the cache. Never
        raises for remote failures.
        """
        if await self.ctx.is_online():
            filters = self.ctx.mapper.remote_tenant_filter(table, tenant) if tenant else None
            try:
                rows = await retry_with_backoff(
                    self.ctx.remote.select,
                    table,
                    filters,
                    config=self.retry_config,
                    context_msg=f"select {table}",
                )
            except Exception as e:
                logger.warning(f"Cloud fetch failed for {table}, falling back to local cache: {e}")
            else:
                records = [self.ctx.mapper.to_local(table, row) for row in rows]
                # Tenant isolation holds even if the remote ignored the filter
                records = self._scope(table, records, tenant)
                return await self._refresh_cache(table, tenant, records)

        return await self._read_local(table, tenant)

    async def _read_local(self, table: str, tenant: str | None) -> list[Record]:
        try:
            cached = await self.ctx.local.get_all(table)
        except SyncStorageError as e:
            logger.warning(f"Local cache unavailable for {table}: {e}")
            return []
        return self._scope(table, cached, tenant)

    def _scope(self, table: str, records: list[Record], tenant: str | None) -> list[Record]:
        if not tenant:
            return records
        return [r for r in records if self.ctx.mapper.tenant_of(table, r) == tenant]

    async def _refresh_cache(
        self, table: str, tenant: str | None, fetched: list[Record]
    ) -> list[Record]:
        """Replace the tenant's slice of the cache with ``fetched``.

        Records with a pending queued mutation keep their local state: a
        pending upsert is the newest write, and a pending delete must not
        be resurrected.
        """
        try:
            pending = await self.ctx.queue.pending_record_ids(table)
            cached = self._scope(table, await self.ctx.local.get_all(table), tenant)
        except SyncStorageError as e:
            logger.warning(f"Could not refresh local cache for {table}: {e}")
            return fetched

        cached_by_id = {r["id"]: r for r in cached if "id" in r}
        fetched_ids = {r["id"] for r in fetched}

        stale = [rid for rid in cached_by_id if rid not in fetched_ids and rid not in pending]
        fresh = [r for r in fetched if r["id"] not in pending]

        try:
            if stale:
                await self.ctx.local.delete_items(table, stale)
            if fresh:
                await self.ctx.local.save_items(table, fresh)
        except SyncStorageError as e:
            logger.warning(f"Could not refresh local cache for {table}: {e}")

        if not pending:
            return fetched

        result: list[Record] = []
        for record in fetched:
            action = pending.get(record["id"])
            if action is None:
                result.append(record)
            elif action == QueueAction.UPSERT:
                result.append(cached_by_id.get(record["id"], record))
        for rid, action in pending.items():
            if action == QueueAction.UPSERT and rid not in fetched_ids and rid in cached_by_id:
                result.append(cached_by_id[rid])
        return result

    # =========================================================================
    # Writes
    # =========================================================================

    def _prepare(self, table: str, record: Record, tenant: str | None) -> Record:
        record_id = record.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise ValidationError("id", "record must carry a non-empty string id", repr(record_id))

        item = dict(record)
        tenant_field = self.ctx.mapper.tenant_field
        if tenant and table != self.ctx.config.tenant_table and not item.get(tenant_field):
            item[tenant_field] = tenant
        if not item.get(UPDATED_AT_FIELD):
            item[UPDATED_AT_FIELD] = datetime.now(UTC)
        return item

    async def upsert(self, table: str, record: Record, tenant: str | None = None) -> bool:
        """Write a record locally, then confirm it with the remote store.

        Returns:
            True if the remote store confirmed the write, False if it was
            deferred to the offline queue
        """
        item = self._prepare(table, record, tenant)
        await self.ctx.local.save_items(table, [item])

        payload = self.ctx.mapper.to_remote(table, item)
        if await self._push(table, [payload]):
            await self._discard_superseded(table, [item["id"]])
            return True

        entry = await self.ctx.queue.enqueue(table, QueueAction.UPSERT, payload)
        logger.info(f"Queued UPSERT for {table}/{item['id']} ({entry.id})")
        return False

    async def upsert_many(
        self, table: str, records: Sequence[Record], tenant: str | None = None
    ) -> bool:
        """Batched upsert: one local write, one remote call.

        On a failed remote call every record gets its own queue entry.
        """
        if not records:
            return True

        items = [self._prepare(table, r, tenant) for r in records]
        await self.ctx.local.save_items(table, items)

        payloads = [self.ctx.mapper.to_remote(table, item) for item in items]
        if await self._push(table, payloads):
            await self._discard_superseded(table, [item["id"] for item in items])
            return True

        await self.ctx.queue.enqueue_many(table, QueueAction.UPSERT, payloads)
        logger.info(f"Queued {len(payloads)} UPSERTs for {table}")
        return False

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record locally, then from the remote store.

        Returns:
            True if the remote store confirmed the delete, False if it was
            deferred to the offline queue
        """
        await self.ctx.local.delete_item(table, record_id)

        if await self.ctx.is_online():
            try:
                await retry_with_backoff(
                    self.ctx.remote.delete,
                    table,
                    [record_id],
                    config=self.retry_config,
                    context_msg=f"delete {table}",
                )
            except Exception as e:
                logger.warning(f"Cloud delete failed for {table}/{record_id}, queueing: {e}")
            else:
                await self._discard_superseded(table, [record_id])
                return True

        entry = await self.ctx.queue.enqueue(table, QueueAction.DELETE, {"id": record_id})
        logger.info(f"Queued DELETE for {table}/{record_id} ({entry.id})")
        return False

    async def _push(self, table: str, payloads: list[Record]) -> bool:
        if not await self.ctx.is_online():
            return False
        try:
            await retry_with_backoff(
                self.ctx.remote.upsert,
                table,
                payloads,
                config=self.retry_config,
                context_msg=f"upsert {table}",
            )
        except Exception as e:
            logger.warning(f"Cloud upsert failed for {table}, queueing {len(payloads)} row(s): {e}")
            return False
        return True

    async def _discard_superseded(self, table: str, record_ids: Sequence[str]) -> None:
        """Drop queued mutations overtaken by a confirmed direct write."""
        ids = set(record_ids)
        stale = [
            e for e in await self.ctx.queue.entries() if e.table == table and e.record_id in ids
        ]
        if stale:
            await self.ctx.queue.remove(stale)
            logger.debug(f"Discarded {len(stale)} superseded queue entries for {table}")

    # =========================================================================
    # Identity
    # =========================================================================

    async def authenticate(self, email: str, password: str) -> AuthResult:
        """Verify operator credentials against the remote store.

        There is no local fallback for identity, so failures come back as a
        structured AuthResult with an ErrorCode.
        """
        if not await self.ctx.is_online():
            return AuthResult.failure(OfflineError("authenticate"))

        try:
            user = await with_deadline(
                self._verify_credentials(email, password),
                self.ctx.config.auth_timeout,
                "authenticate",
            )
        except Exception as e:
            logger.warning(f"Authentication failed for {email}: {e}")
            return AuthResult.failure(e)

        return AuthResult(success=True, user=user)

    async def _verify_credentials(self, email: str, password: str) -> Record:
        table = self.ctx.config.users_table
        rows = await self.ctx.remote.select(table, {"email": email})
        if not rows:
            raise EmailNotFoundError(email)

        row = rows[0]
        stored = str(row.get("password") or "")
        if not hmac.compare_digest(stored.encode(), password.encode()):
            raise AuthFailedError(email)

        user: dict[str, Any] = self.ctx.mapper.to_local(table, row)
        user.pop("password", None)
        if user.get("status", "Active") != "Active":
            raise AuthFailedError(email)

        try:
            await self.ctx.local.save_items(table, [user])
        except SyncStorageError as e:
            logger.warning(f"Could not cache authenticated user {user.get('id')}: {e}")
        return user
