"""
Sync Manager

Facade over RealtimeSyncService used by the app shell:
- merges supplied connection config with defaults and persists it
- derives the stable device id
- connects / disconnects / reconnects the sync channel for a user
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from telesync.client.device_identity import DEVICE_ID_KEY, get_or_create_device_id
from telesync.client.sync_service import RealtimeSyncService, get_sync_service
from telesync.config import TelesyncSettings, get_settings, websocket_url_for
from telesync.errors import NotInitializedError

logger = logging.getLogger(__name__)

CONFIG_KEY = "syncConfig"


class SyncConfig(BaseModel):
    """Persisted connection configuration"""
    model_config = ConfigDict(extra="ignore")

    serverUrl: str
    httpEndpoint: str
    websocketEndpoint: str
    userId: Optional[str] = None
    deviceId: str
    autoConnect: bool = True
    enableOfflineMode: bool = True


class SyncManager:
    """Owns SyncConfig and drives the sync service lifecycle"""

    def __init__(
        self,
        sync_service: Optional[RealtimeSyncService] = None,
        settings: Optional[TelesyncSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.sync_service = sync_service or get_sync_service()
        self.store = self.sync_service.store
        self.config: Optional[SyncConfig] = None
        self.is_initialized = False

    def _default_config(self, server_url: str) -> Dict[str, Any]:
        base = server_url.rstrip("/")
        return {
            "serverUrl": server_url,
            "httpEndpoint": f"{base}/api",
            "websocketEndpoint": websocket_url_for(server_url, self.settings.websocket_path),
            "autoConnect": True,
            "enableOfflineMode": True,
        }

    def _save_config(self) -> None:
        if self.config is not None:
            self.store.set_value(CONFIG_KEY, self.config.model_dump())

    async def initialize(self, config: Optional[Dict[str, Any]] = None, **overrides: Any) -> SyncConfig:
        """
        Merge config with defaults, persist it, and connect when possible.

        Endpoints not supplied are derived from serverUrl: httpEndpoint is
        serverUrl + /api, websocketEndpoint is serverUrl with http->ws + /sync.

        Returns:
            The effective SyncConfig
        """
        supplied = {
            key: value
            for key, value in {**(config or {}), **overrides}.items()
            if value is not None
        }

        try:
            logger.info("🚀 Initializing SyncManager...")
            server_url = supplied.get("serverUrl") or self.settings.server_url

            merged = {**self._default_config(server_url), **supplied}
            merged["deviceId"] = supplied.get("deviceId") or get_or_create_device_id(self.store)
            self.config = SyncConfig.model_validate(merged)

            # Save config for future sessions
            self._save_config()

            if self.config.userId and self.config.autoConnect:
                await self.connect()

            self.is_initialized = True
            logger.info("✅ SyncManager initialized successfully")
            return self.config

        except Exception as e:
            logger.error(f"❌ Failed to initialize SyncManager: {e}")
            raise

    async def connect(self, user_id: Optional[str] = None) -> None:
        """
        Start the sync service for a user.

        Raises:
            NotInitializedError: If initialize() or load_saved_config() has not run
            ValueError: If no user id is known
        """
        if self.config is None:
            raise NotInitializedError("SyncManager")

        final_user_id = user_id or self.config.userId
        if not final_user_id:
            raise ValueError("User ID is required to connect sync service.")

        logger.info(f"🔌 Connecting sync service for user: {final_user_id}")

        self.config.userId = final_user_id
        self._save_config()

        await self.sync_service.initialize(
            final_user_id,
            self.config.deviceId,
            websocket_endpoint=self.config.websocketEndpoint,
            http_endpoint=self.config.httpEndpoint,
        )

    async def disconnect(self) -> None:
        """Close the channel; local data and outbox are kept"""
        logger.info("🔌 Disconnecting sync service...")
        await self.sync_service.disconnect()

    async def reconnect(self, user_id: str) -> None:
        """Disconnect then connect, which forces a full resync"""
        await self.disconnect()
        await self.connect(user_id)

    def load_saved_config(self) -> Optional[SyncConfig]:
        saved = self.store.get_value(CONFIG_KEY)
        if not saved:
            return None
        try:
            self.config = SyncConfig.model_validate(saved)
        except ValidationError as e:
            logger.error(f"Error loading saved config: {e}")
            return None
        return self.config

    def get_config(self) -> Optional[SyncConfig]:
        return self.config

    def update_config(self, **updates: Any) -> SyncConfig:
        if self.config is None:
            raise NotInitializedError("SyncManager")

        self.config = SyncConfig.model_validate({**self.config.model_dump(), **updates})
        self._save_config()
        return self.config

    def is_ready(self) -> bool:
        return self.is_initialized and self.config is not None

    def get_sync_status(self) -> Dict[str, Any]:
        return self.sync_service.get_sync_status()

    async def force_sync(self) -> None:
        """Manual resync trigger"""
        if not self.is_ready():
            raise NotInitializedError("SyncManager")

        logger.info("🔄 Forcing manual sync...")
        await self.reconnect(self.config.userId)

    async def set_auto_sync(self, enabled: bool) -> None:
        """Enable/disable auto-connect and apply it now"""
        if self.config is None:
            return

        self.config.autoConnect = enabled
        self._save_config()

        if enabled and self.config.userId:
            await self.connect()
        elif not enabled:
            await self.disconnect()

    async def clear_sync_data(self) -> None:
        """Forget config, device id and queued changes (logout/reset)"""
        logger.info("🗑️ Clearing sync data...")

        await self.disconnect()
        self.store.delete_values(CONFIG_KEY, DEVICE_ID_KEY)
        self.store.clear_pending()

        self.config = None
        self.is_initialized = False


# Global instance, created on first use
_sync_manager: Optional[SyncManager] = None


def get_sync_manager() -> SyncManager:
    """Get the process-wide sync manager"""
    global _sync_manager
    if _sync_manager is None:
        _sync_manager = SyncManager()
    return _sync_manager


def _reset_sync_manager() -> None:
    """Reset the global instance - for testing only"""
    global _sync_manager
    _sync_manager = None
