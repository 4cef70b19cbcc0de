"""
POS Offline Sync

Offline-first synchronization engine for point-of-sale terminals.

Provides:
- Cloud-first reads with local-cache fallback
- Local-first writes confirmed against the cloud, deferred when offline
- A durable offline queue drained in batches with a dead-letter bound
- Local versus cloud row count diagnostics
- Live change subscriptions mirrored into the local cache

Usage:

    >>> from pos_sync import OfflineSyncEngine, SyncConfig
    >>> config = SyncConfig.from_environment()
    >>> async with OfflineSyncEngine(config) as engine:
    ...     ok = await engine.upsert("products", {"id": "p1", "name": "Widget"}, tenant="BIZ-1")
    ...     if not ok:
    ...         print("queued for later")
    ...     for d in await engine.get_sync_diagnostics("BIZ-1"):
    ...         print(d.table, d.status.value, d.pending_actions)

Custom stores:

    # Any LocalStore / RemoteStore implementation can be injected
    engine = OfflineSyncEngine(config, local=my_local, remote=my_remote)
"""

from .config import CosmosAuthMethod, SyncConfig
from .connectivity import ConnectivityMonitor
from .context import SyncContext
from .diagnostics import DiagnosticsReconciler, DiagnosticStatus, SyncDiagnostic
from .drainer import DrainResult, QueueDrainer
from .engine import OfflineSyncEngine
from .exceptions import (
    AuthFailedError,
    EmailNotFoundError,
    ErrorCode,
    HandshakeTimeoutError,
    NetworkError,
    OfflineError,
    RemoteStoreError,
    ServerError,
    StorageIOError,
    SyncStorageError,
    ValidationError,
    VersionMismatchError,
)
from .field_mapper import FieldMapper
from .gateway import AuthResult, SyncGateway
from .local import JsonFileLocalStore
from .offline_queue import OfflineQueue, QueueAction, QueueEntry
from .protocol import ChangeKind, LocalStore, Record, RemoteChange, RemoteStore, Subscription
from .remote import CosmosRemoteStore
from .retry import RetryConfig, is_retryable, retry_with_backoff
from .subscriber import ChangeEvent, ChangeSubscriber

__version__ = "0.1.0"

__all__ = [
    # Engine
    "OfflineSyncEngine",
    "SyncConfig",
    "CosmosAuthMethod",
    "SyncContext",
    "ConnectivityMonitor",
    # Components
    "SyncGateway",
    "AuthResult",
    "QueueDrainer",
    "DrainResult",
    "DiagnosticsReconciler",
    "DiagnosticStatus",
    "SyncDiagnostic",
    "ChangeSubscriber",
    "ChangeEvent",
    "FieldMapper",
    # Queue
    "OfflineQueue",
    "QueueEntry",
    "QueueAction",
    # Stores
    "LocalStore",
    "RemoteStore",
    "Subscription",
    "Record",
    "RemoteChange",
    "ChangeKind",
    "JsonFileLocalStore",
    "CosmosRemoteStore",
    # Retry
    "RetryConfig",
    "retry_with_backoff",
    "is_retryable",
    # Exceptions
    "SyncStorageError",
    "ErrorCode",
    "OfflineError",
    "RemoteStoreError",
    "NetworkError",
    "ServerError",
    "AuthFailedError",
    "EmailNotFoundError",
    "HandshakeTimeoutError",
    "VersionMismatchError",
    "StorageIOError",
    "ValidationError",
]
