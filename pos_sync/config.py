"""
Configuration for the offline sync engine.

Configuration can be provided directly, via environment variables, or via
the ``sync:`` section of a YAML settings file.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TRACKED_TABLES = (
    "products",
    "transactions",
    "users",
    "suppliers",
    "referrals",
    "businesses",
)

# Keys that ship in sample settings files and must never count as credentials
PLACEHOLDER_KEYS = frozenset({"", "placeholder", "your-anon-key", "your-cosmos-key"})


class CosmosAuthMethod(Enum):
    """Authentication method for the Cosmos DB remote store.

    KEY: Account key (development/testing)
    DEFAULT_CREDENTIAL: Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Azure Managed Identity explicitly
    SERVICE_PRINCIPAL: Service Principal with client_id/client_secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class SyncConfig:
    """Configuration for the sync engine.

    Environment Variables:
        POS_SYNC_LOCAL_PATH: Directory for the local store
        POS_SYNC_TENANT_TABLE: Name of the tenant table (default: businesses)
        POS_SYNC_TENANT_COLUMN: Remote tenant column (default: business_id)
        POS_SYNC_MAX_QUEUE_RETRIES: Dead-letter threshold (default: 5)
        POS_SYNC_AUTO_SYNC_INTERVAL: Seconds between background drains
        POS_SYNC_COSMOS_ENDPOINT: Cosmos DB endpoint URL
        POS_SYNC_COSMOS_KEY: Cosmos DB key (if using key auth)
        POS_SYNC_COSMOS_DATABASE: Database name (default: pos-sync)
        POS_SYNC_COSMOS_AUTH_METHOD: Auth method (default: key)
        AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: Azure AD settings

    Attributes:
        tenant_table: Table holding the tenants themselves
        tenant_column: Remote column that scopes every other table to a tenant
        tracked_tables: Tables covered by diagnostics and live subscriptions
        queue_table: Reserved local table for the offline queue
        users_table: Table holding operator accounts for authenticate
        max_queue_retries: Failed drains tolerated before an entry is dead-lettered

        retry_attempts: Attempts for direct-path remote calls
        retry_base_delay: First backoff delay in seconds, doubled per attempt
        retry_max_delay: Backoff cap in seconds
        attempt_timeout: Deadline for a single direct-path attempt
        auth_timeout: Deadline for authenticate

        auto_sync_interval: Seconds between background drain attempts
        connectivity_host: Host resolved to decide reachability
        connectivity_timeout: Seconds allowed for the reachability probe

        local_path: Directory for the JSON file local store
    """

    tenant_table: str = "businesses"
    tenant_column: str = "business_id"
    tracked_tables: tuple[str, ...] = DEFAULT_TRACKED_TABLES
    queue_table: str = "offline_queue"
    users_table: str = "users"
    max_queue_retries: int = 5

    # Direct-path retry settings
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    attempt_timeout: float = 10.0
    auth_timeout: float = 8.0

    # Background sync
    auto_sync_interval: float = 30.0
    connectivity_host: str | None = None
    connectivity_timeout: float = 5.0

    # Local storage settings
    local_path: str | None = None

    # Cosmos DB connection settings
    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.KEY
    cosmos_key: str | None = None
    cosmos_database: str = "pos-sync"
    change_feed_poll_interval: float = 2.0

    # Azure AD authentication settings (for SERVICE_PRINCIPAL)
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    def __post_init__(self) -> None:
        if self.queue_table in self.tracked_tables:
            raise ValueError(f"queue_table '{self.queue_table}' collides with a tracked table")
        if self.max_queue_retries < 0:
            raise ValueError("max_queue_retries must be >= 0")
        self.tracked_tables = tuple(self.tracked_tables)

    @property
    def remote_configured(self) -> bool:
        """Whether a remote store is configured well enough to try."""
        if not self.cosmos_endpoint or not self.cosmos_endpoint.startswith("https://"):
            return False
        if self.cosmos_auth_method == CosmosAuthMethod.KEY:
            return (self.cosmos_key or "") not in PLACEHOLDER_KEYS
        return True

    @property
    def resolved_local_path(self) -> Path:
        """Directory used by the local store (default: ~/.pos_sync/data)."""
        if self.local_path:
            return Path(self.local_path)
        return Path.home() / ".pos_sync" / "data"

    @classmethod
    def from_environment(cls) -> SyncConfig:
        """Create configuration from environment variables."""
        auth_method_str = os.environ.get("POS_SYNC_COSMOS_AUTH_METHOD", "key")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.KEY

        return cls(
            tenant_table=os.environ.get("POS_SYNC_TENANT_TABLE", "businesses"),
            tenant_column=os.environ.get("POS_SYNC_TENANT_COLUMN", "business_id"),
            max_queue_retries=int(os.environ.get("POS_SYNC_MAX_QUEUE_RETRIES", "5")),
            auto_sync_interval=float(os.environ.get("POS_SYNC_AUTO_SYNC_INTERVAL", "30")),
            local_path=os.environ.get("POS_SYNC_LOCAL_PATH"),
            cosmos_endpoint=os.environ.get("POS_SYNC_COSMOS_ENDPOINT"),
            cosmos_auth_method=auth_method,
            cosmos_key=os.environ.get("POS_SYNC_COSMOS_KEY"),
            cosmos_database=os.environ.get("POS_SYNC_COSMOS_DATABASE", "pos-sync"),
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
        )

    @classmethod
    def from_file(cls, path: Path) -> SyncConfig:
        """Create configuration from the ``sync:`` section of a YAML file.

        Unknown keys are ignored. A missing file yields the defaults.
        """
        if not path.exists():
            return cls()

        data = yaml.safe_load(path.read_text()) or {}
        section = data.get("sync") or {}

        known = {f.name for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        for key, value in section.items():
            if key not in known:
                logger.debug(f"Ignoring unknown sync setting: {key}")
                continue
            values[key] = value

        if "cosmos_auth_method" in values:
            try:
                values["cosmos_auth_method"] = CosmosAuthMethod(
                    str(values["cosmos_auth_method"]).lower()
                )
            except ValueError:
                values["cosmos_auth_method"] = CosmosAuthMethod.KEY
        if "tracked_tables" in values:
            values["tracked_tables"] = tuple(values["tracked_tables"])

        return cls(**values)
