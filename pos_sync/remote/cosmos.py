"""
Cosmos DB remote store.

Each application table is one container partitioned by ``/id``, so every
record can be read, upserted and deleted with its id alone. Tenant
scoping is a plain column filter.

Supports multiple authentication methods:
- Key-based (development/testing)
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal

Live subscriptions poll the container change feed. In the default
latest-version mode the feed does not report deletes and cannot tell
inserts from updates, so every change arrives as an UPDATE; containers
with all-versions-and-deletes enabled report the exact operation.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any

from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError
from azure.identity.aio import (
    ClientSecretCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

from ..config import CosmosAuthMethod, SyncConfig
from ..exceptions import NetworkError, RemoteStoreError, ServerError, ValidationError
from ..protocol import (
    ChangeKind,
    Record,
    RemoteChange,
    RemoteChangeHandler,
    RemoteStore,
    Subscription,
)

logger = logging.getLogger(__name__)

PARTITION_KEY_PATH = "/id"
SYSTEM_FIELDS = frozenset({"_rid", "_self", "_etag", "_attachments", "_ts", "_lsn"})
_COLUMN_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _get_credential(config: SyncConfig) -> Any:
    """Get the credential matching the configured auth method.

    Raises:
        RemoteStoreError: If the configuration is incomplete
    """
    auth_method = config.cosmos_auth_method

    if auth_method == CosmosAuthMethod.KEY:
        if not config.cosmos_key:
            raise RemoteStoreError("cosmos_key required for KEY authentication", status_code=401)
        return config.cosmos_key

    if auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        return DefaultAzureCredential()

    if auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()

    if auth_method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all([config.azure_tenant_id, config.azure_client_id, config.azure_client_secret]):
            raise RemoteStoreError(
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication",
                status_code=401,
            )
        return ClientSecretCredential(
            tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )

    raise RemoteStoreError(f"Unsupported auth method: {auth_method}")


def translate_error(error: Exception, table: str | None = None) -> RemoteStoreError:
    """Map SDK and transport errors onto the sync error taxonomy."""
    if isinstance(error, RemoteStoreError):
        return error
    if isinstance(error, CosmosHttpResponseError):
        status = error.status_code
        if status is not None and status >= 500:
            return ServerError(str(error), status_code=status, table=table, cause=error)
        return RemoteStoreError(str(error), status_code=status, table=table, cause=error)
    if isinstance(error, (ServiceRequestError, ServiceResponseError, OSError)):
        return NetworkError(f"Transport failure: {error}", table=table, cause=error)
    return ServerError(f"Unclassified remote failure: {error}", table=table, cause=error)


def strip_system_fields(doc: dict[str, Any]) -> Record:
    return {k: v for k, v in doc.items() if k not in SYSTEM_FIELDS}


def build_query(
    filters: dict[str, Any] | None, select: str = "*"
) -> tuple[str, list[dict[str, Any]]]:
    """Build a parameterised equality query over ``filters``."""
    query = f"SELECT {select} FROM c"
    parameters: list[dict[str, Any]] = []
    clauses = []
    for i, (column, value) in enumerate((filters or {}).items()):
        if not _COLUMN_NAME.match(column):
            raise ValidationError("filter", "invalid column name", column)
        clauses.append(f"c.{column} = @p{i}")
        parameters.append({"name": f"@p{i}", "value": value})
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    return query, parameters


def change_from_feed(table: str, doc: dict[str, Any]) -> RemoteChange:
    """Convert a change feed document into a RemoteChange."""
    metadata = doc.get("metadata")
    if isinstance(metadata, dict) and "operationType" in metadata:
        operation = str(metadata["operationType"]).lower()
        current = strip_system_fields(doc.get("current") or {})
        previous = strip_system_fields(doc.get("previous") or {})
        if operation == "delete":
            old = previous or {"id": metadata.get("id")}
            return RemoteChange(table=table, kind=ChangeKind.DELETE, old=old)
        kind = ChangeKind.INSERT if operation == "create" else ChangeKind.UPDATE
        return RemoteChange(table=table, kind=kind, new=current, old=previous)
    return RemoteChange(table=table, kind=ChangeKind.UPDATE, new=strip_system_fields(doc))


class ChangeFeedSubscription(Subscription):
    """Polls one container's change feed and forwards matching rows."""

    def __init__(
        self,
        table: str,
        container: ContainerProxy,
        filters: dict[str, Any] | None,
        handler: RemoteChangeHandler,
        poll_interval: float,
    ) -> None:
        self.table = table
        self.container = container
        self.filters = filters or {}
        self.handler = handler
        self.poll_interval = poll_interval
        self._continuation: str | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._poll_loop())

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def close(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def _matches(self, change: RemoteChange) -> bool:
        row = change.row
        # Deletes may only carry the id; let the subscriber decide
        if change.kind == ChangeKind.DELETE and set(row) <= {"id"}:
            return True
        return all(row.get(column) == value for column, value in self.filters.items())

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except (CosmosHttpResponseError, ServiceRequestError, ServiceResponseError) as e:
                logger.warning(f"Change feed poll failed for {self.table}: {e}")
            except Exception:
                logger.exception(f"Change feed handler failed for {self.table}")
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> None:
        if self._continuation:
            feed = self.container.query_items_change_feed(continuation=self._continuation)
        else:
            feed = self.container.query_items_change_feed(is_start_from_beginning=False)

        async for doc in feed:
            change = change_from_feed(self.table, doc)
            if self._matches(change):
                await self.handler(change)

        headers = self.container.client_connection.last_response_headers or {}
        self._continuation = headers.get("etag") or self._continuation


class CosmosRemoteStore(RemoteStore):
    """Remote store backed by Azure Cosmos DB (one container per table)."""

    def __init__(self, config: SyncConfig) -> None:
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: Any = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}
        self._subscriptions: list[ChangeFeedSubscription] = []

    async def initialize(self) -> None:
        """Connect and make sure the database exists."""
        if self._database is not None:
            return
        if not self.config.cosmos_endpoint:
            raise RemoteStoreError("cosmos_endpoint is not configured")

        try:
            self._credential = _get_credential(self.config)
            self._client = CosmosClient(self.config.cosmos_endpoint, credential=self._credential)
            self._database = await self._client.create_database_if_not_exists(
                id=self.config.cosmos_database
            )
            logger.info(f"Cosmos remote store initialized: {self.config.cosmos_endpoint}")
        except Exception as e:
            await self._reset_connection()
            raise translate_error(e) from e

    async def _reset_connection(self) -> None:
        """Release the client and credential and forget the database handle."""
        client, credential = self._client, self._credential
        self._client = None
        self._credential = None
        self._database = None
        self._containers = {}
        if client is not None:
            await client.close()
        if credential is not None and hasattr(credential, "close"):
            await credential.close()

    async def _container(self, table: str) -> ContainerProxy:
        if table in self._containers:
            return self._containers[table]
        await self.initialize()
        if self._database is None:
            raise RemoteStoreError("Cosmos database is not initialized", table=table)
        container = await self._database.create_container_if_not_exists(
            id=table,
            partition_key=PartitionKey(path=PARTITION_KEY_PATH),
        )
        self._containers[table] = container
        return container

    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Record]:
        query, parameters = build_query(filters)
        try:
            container = await self._container(table)
            return [
                strip_system_fields(doc)
                async for doc in container.query_items(query=query, parameters=parameters)
            ]
        except Exception as e:
            raise translate_error(e, table) from e

    async def upsert(self, table: str, rows: Sequence[Record], on_conflict: str = "id") -> None:
        if on_conflict != "id":
            raise ValidationError("on_conflict", "Cosmos containers are keyed by id", on_conflict)
        if not rows:
            return
        try:
            container = await self._container(table)
        except Exception as e:
            raise translate_error(e, table) from e

        results = await asyncio.gather(
            *(container.upsert_item(body=dict(row)) for row in rows),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            logger.warning(f"{len(failures)}/{len(rows)} upserts failed for {table}")
            raise translate_error(failures[0], table) from failures[0]

    async def delete(self, table: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        try:
            container = await self._container(table)
        except Exception as e:
            raise translate_error(e, table) from e

        async def delete_one(item_id: str) -> None:
            try:
                await container.delete_item(item=item_id, partition_key=item_id)
            except CosmosResourceNotFoundError:
                pass

        results = await asyncio.gather(*(delete_one(i) for i in ids), return_exceptions=True)
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            raise translate_error(failures[0], table) from failures[0]

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        query, parameters = build_query(filters, select="VALUE COUNT(1)")
        try:
            container = await self._container(table)
            total = 0
            async for value in container.query_items(query=query, parameters=parameters):
                total += int(value)
            return total
        except Exception as e:
            raise translate_error(e, table) from e

    async def subscribe(
        self,
        table: str,
        filters: dict[str, Any] | None,
        handler: RemoteChangeHandler,
    ) -> Subscription:
        try:
            container = await self._container(table)
        except Exception as e:
            raise translate_error(e, table) from e

        subscription = ChangeFeedSubscription(
            table, container, filters, handler, self.config.change_feed_poll_interval
        )
        subscription.start()
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions = []
        await self._reset_connection()
