"""
Sync Client Package

Device-side half of the sync engine.

Components:
- local_store.py: durable documents, outbox and key/value settings (SQLite)
- connection.py: connection state, retry policy, health tracking
- sync_service.py: RealtimeSyncService - CRUD, subscriptions, replication
- sync_manager.py: persisted connection config and lifecycle facade
- role_sync.py: role-scoped subscriptions and notifications
- devices.py: device list, sync credentials and device linking
"""

# Storage
from telesync.client.local_store import LocalStore, PendingChange

# Connection state and retry logic
from telesync.client.connection import (
    ConnectionState,
    ConnectionHealth,
    ConnectionRetryHandler,
    RetryConfig,
)

# Sync client
from telesync.client.sync_service import (
    RealtimeSyncService,
    get_sync_service,
    _reset_sync_service,
)

# Orchestration
from telesync.client.sync_manager import (
    SyncConfig,
    SyncManager,
    get_sync_manager,
    _reset_sync_manager,
)
from telesync.client.role_sync import (
    ROLE_COLLECTIONS,
    RoleNotification,
    RoleSyncService,
    get_role_sync_service,
    _reset_role_sync_service,
)
from telesync.client.devices import (
    DeviceInfo,
    SessionUser,
    SyncCredentials,
    DeviceSessionService,
    get_device_session_service,
    _reset_device_session_service,
)

__all__ = [
    "LocalStore",
    "PendingChange",
    "ConnectionState",
    "ConnectionHealth",
    "ConnectionRetryHandler",
    "RetryConfig",
    "RealtimeSyncService",
    "get_sync_service",
    "_reset_sync_service",
    "SyncConfig",
    "SyncManager",
    "get_sync_manager",
    "_reset_sync_manager",
    "ROLE_COLLECTIONS",
    "RoleNotification",
    "RoleSyncService",
    "get_role_sync_service",
    "_reset_role_sync_service",
    "DeviceInfo",
    "SessionUser",
    "SyncCredentials",
    "DeviceSessionService",
    "get_device_session_service",
    "_reset_device_session_service",
]
