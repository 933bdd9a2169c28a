"""
Device / session bookkeeping

Keeps the list of devices a user has synced from, issues the signed sync
token for this device, and links additional devices through a short-lived
JWT (rendered as a QR code by the UI). Authenticating the user is done
elsewhere; start_session() receives an already authenticated user.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from pydantic import BaseModel, Field, ValidationError

from telesync.client.device_identity import (
    current_platform,
    generate_device_name,
    get_or_create_device_id,
    user_agent,
)
from telesync.client.sync_manager import SyncManager, get_sync_manager
from telesync.config import TelesyncSettings, get_settings
from telesync.errors import AuthenticationRequiredError, DeviceLinkError

logger = logging.getLogger(__name__)

CURRENT_USER_KEY = "currentUser"
CREDENTIALS_KEY = "syncCredentials"
DEVICE_INFO_KEY = "deviceInfo"
LINK_SECRET_KEY = "linkSecret"

SYNC_TOKEN_TYPE = "sync"
LINK_TOKEN_TYPE = "device_link"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===== Models =====

class DeviceInfo(BaseModel):
    id: str
    name: str
    platform: str
    lastActiveAt: str = Field(default_factory=_now_iso)
    isActive: bool = True
    userAgent: Optional[str] = None


class SessionUser(BaseModel):
    """Authenticated user as handed over by the auth layer"""
    id: str
    name: str = ""
    role: str = "patient"
    email: Optional[str] = None
    devices: List[DeviceInfo] = Field(default_factory=list)


class SyncCredentials(BaseModel):
    userId: str
    deviceId: str
    authToken: str
    syncEnabled: bool = True


# ===== Service =====

class DeviceSessionService:
    """Per-device session state on top of the Sync Manager"""

    def __init__(
        self,
        sync_manager: Optional[SyncManager] = None,
        settings: Optional[TelesyncSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.sync_manager = sync_manager or get_sync_manager()
        self.store = self.sync_manager.store

        self.current_user: Optional[SessionUser] = None
        self.current_device: Optional[DeviceInfo] = None
        self.credentials: Optional[SyncCredentials] = None

    # ========== Persistence ==========

    def _save_user(self) -> None:
        if self.current_user is not None:
            self.store.set_value(CURRENT_USER_KEY, self.current_user.model_dump())

    def _save_device(self) -> None:
        if self.current_device is not None:
            self.store.set_value(DEVICE_INFO_KEY, self.current_device.model_dump())

    def _save_credentials(self) -> None:
        if self.credentials is not None:
            self.store.set_value(CREDENTIALS_KEY, self.credentials.model_dump())

    def _signing_secret(self) -> str:
        """Configured secret, or a per-installation one for development"""
        if self.settings.link_secret_key:
            return self.settings.link_secret_key

        secret = self.store.get_value(LINK_SECRET_KEY)
        if not secret:
            secret = secrets.token_urlsafe(32)
            self.store.set_value(LINK_SECRET_KEY, secret)
        return secret

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Load the saved session and set up this device's info"""
        self._load_saved_session()
        self._setup_device_info()
        logger.info("🔐 Device session service initialized")

    def _load_saved_session(self) -> None:
        saved_user = self.store.get_value(CURRENT_USER_KEY)
        saved_credentials = self.store.get_value(CREDENTIALS_KEY)

        try:
            if saved_user:
                self.current_user = SessionUser.model_validate(saved_user)
            if saved_credentials:
                self.credentials = SyncCredentials.model_validate(saved_credentials)
        except ValidationError as e:
            logger.error(f"Error loading saved session: {e}")
            self.current_user = None
            self.credentials = None
            return

        logger.info("📄 Loaded saved session data")

    def _setup_device_info(self) -> DeviceInfo:
        saved = self.store.get_value(DEVICE_INFO_KEY)
        device = None
        if saved:
            try:
                device = DeviceInfo.model_validate(saved)
            except ValidationError as e:
                logger.warning(f"Discarding unreadable device info: {e}")

        if device is None:
            platform_name = current_platform()
            device = DeviceInfo(
                id=get_or_create_device_id(self.store, platform_name),
                name=generate_device_name(platform_name),
                platform=platform_name,
                userAgent=user_agent(),
            )

        device.lastActiveAt = _now_iso()
        device.isActive = True
        self.current_device = device
        self._save_device()

        logger.info(f"📱 Device info setup: {device.name}")
        return device

    def _require_user(self) -> SessionUser:
        if self.current_user is None:
            raise AuthenticationRequiredError()
        return self.current_user

    async def start_session(self, user: SessionUser, enable_sync: bool = True) -> SessionUser:
        """
        Register this device for an authenticated user and start syncing.

        Returns:
            The user with this device present in its device list
        """
        logger.info(f"🔐 Starting session for user: {user.id}")

        if self.current_device is None:
            self._setup_device_info()

        self.register_device(user, self.current_device)
        self.current_user = user
        self._save_user()

        if enable_sync:
            await self._setup_sync_credentials(user)

        logger.info("✅ Session started")
        return user

    def register_device(self, user: SessionUser, device: DeviceInfo) -> None:
        """Add the device to the user's list, replacing an entry with the same id"""
        for index, existing in enumerate(user.devices):
            if existing.id == device.id:
                user.devices[index] = device.model_copy()
                break
        else:
            user.devices.append(device.model_copy())

        logger.info(f"📱 Registered device: {device.name} for user: {user.name or user.id}")

    def issue_sync_token(self, user: SessionUser) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "type": SYNC_TOKEN_TYPE,
            "deviceId": self.current_device.id,
            "iat": int(now.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(payload, self._signing_secret(), algorithm=self.settings.link_token_algorithm)

    async def _setup_sync_credentials(self, user: SessionUser, server_url: Optional[str] = None) -> None:
        self.credentials = SyncCredentials(
            userId=user.id,
            deviceId=self.current_device.id,
            authToken=self.issue_sync_token(user),
            syncEnabled=True,
        )
        self._save_credentials()

        await self.sync_manager.initialize(
            serverUrl=server_url,
            userId=user.id,
            deviceId=self.current_device.id,
            autoConnect=True,
        )
        logger.info("🔄 Sync credentials setup complete")

    # ========== Devices ==========

    def get_user_devices(self) -> List[DeviceInfo]:
        """Active devices of the logged-in user"""
        user = self._require_user()
        return [device for device in user.devices if device.isActive]

    def remove_device(self, device_id: str) -> bool:
        """Mark a device inactive; returns whether it was known"""
        user = self._require_user()

        for device in user.devices:
            if device.id == device_id:
                device.isActive = False
                self._save_user()
                logger.info(f"🗑️ Removed device: {device_id}")
                return True
        return False

    # ========== Sync control ==========

    async def toggle_sync(self, enabled: bool) -> None:
        if self.credentials is None:
            raise AuthenticationRequiredError("No sync credentials found. Please login first.")

        self.credentials.syncEnabled = enabled
        self._save_credentials()

        if enabled:
            await self.sync_manager.connect(self.credentials.userId)
        else:
            await self.sync_manager.disconnect()

        logger.info(f"🔄 Sync {'enabled' if enabled else 'disabled'}")

    def is_sync_enabled(self) -> bool:
        return bool(self.credentials and self.credentials.syncEnabled)

    def get_sync_status(self) -> Dict[str, Any]:
        service = self.sync_manager.sync_service
        last_sync = service.health.last_sync
        return {
            "connected": service.is_connected,
            "deviceCount": len(self.get_user_devices()) if self.current_user else 0,
            "lastSync": last_sync.isoformat() if last_sync else None,
        }

    # ========== Device linking ==========

    def generate_linking_token(self) -> str:
        """
        Short-lived token another device scans to join this user's sync.

        Raises:
            AuthenticationRequiredError: If nobody is logged in
        """
        user = self._require_user()
        if self.credentials is None:
            raise AuthenticationRequiredError("No sync credentials found. Please login first.")

        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "type": LINK_TOKEN_TYPE,
            "userId": user.id,
            "name": user.name,
            "role": user.role,
            "serverUrl": self.sync_manager.config.serverUrl if self.sync_manager.config else self.settings.server_url,
            "exp": int((now + timedelta(minutes=self.settings.link_token_ttl_minutes)).timestamp()),
            "iat": int(now.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(payload, self._signing_secret(), algorithm=self.settings.link_token_algorithm)

    def _decode_linking_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self._signing_secret(),
                algorithms=[self.settings.link_token_algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise DeviceLinkError("Linking code has expired", expired=True)
        except jwt.InvalidTokenError as e:
            raise DeviceLinkError(f"Invalid linking code: {e!s}")

        if payload.get("type") != LINK_TOKEN_TYPE:
            raise DeviceLinkError("Invalid linking code: wrong token type")
        return payload

    async def link_device(self, token: str) -> SessionUser:
        """
        Join this device to the user named in a linking token.

        Raises:
            DeviceLinkError: If the token is expired, forged or not a linking token
        """
        payload = self._decode_linking_token(token)
        logger.info(f"🔗 Linking device to user: {payload['userId']}")

        if self.current_device is None:
            self._setup_device_info()

        user = SessionUser(
            id=payload["userId"],
            name=payload.get("name") or "",
            role=payload.get("role") or "patient",
        )
        self.register_device(user, self.current_device)
        self.current_user = user
        self._save_user()

        await self._setup_sync_credentials(user, server_url=payload.get("serverUrl"))

        logger.info("✅ Device linked successfully")
        return user

    # ========== Logout ==========

    async def logout(self) -> None:
        """Disconnect sync, mark this device inactive, forget the session"""
        await self.sync_manager.disconnect()

        if self.current_device is not None:
            self.current_device.isActive = False
            self._save_device()

        self.store.delete_values(CURRENT_USER_KEY, CREDENTIALS_KEY)
        self.current_user = None
        self.credentials = None

        logger.info("👋 Logout complete")


# Global instance, created on first use
_device_session_service: Optional[DeviceSessionService] = None


def get_device_session_service() -> DeviceSessionService:
    global _device_session_service
    if _device_session_service is None:
        _device_session_service = DeviceSessionService()
    return _device_session_service


def _reset_device_session_service() -> None:
    """Reset the global instance - for testing only"""
    global _device_session_service
    _device_session_service = None
