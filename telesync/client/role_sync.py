"""
Role Sync Orchestrator

Subscribes to the collections a user's role cares about and turns raw
change events into role-scoped notifications. A document is surfaced only
when it references the current user (patientId / doctorId / chemistId),
except for global collections and the admin role, which see everything.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from telesync.client.sync_manager import SyncManager, get_sync_manager
from telesync.config import get_settings
from telesync.errors import NotInitializedError
from telesync.models import document_references

logger = logging.getLogger(__name__)


# ===== Role collections =====

ROLE_COLLECTIONS: Dict[str, Tuple[str, ...]] = {
    "patient": (
        "consultations",
        "appointments",
        "prescriptions",
        "medicalRecords",
        "doctors",
        "notifications",
    ),
    "doctor": (
        "consultations",
        "appointments",
        "prescriptions",
        "medicalRecords",
        "patients",
        "notifications",
    ),
    "chemist": (
        "prescriptions",
        "medications",
        "inventory",
        "orders",
        "notifications",
    ),
    "admin": (
        "consultations",
        "appointments",
        "prescriptions",
        "medicalRecords",
        "doctors",
        "patients",
        "chemists",
        "medications",
        "inventory",
        "notifications",
        "users",
    ),
}
ROLE_COLLECTIONS["pharmacist"] = ROLE_COLLECTIONS["chemist"]

ROLE_ICONS = {
    "patient": "👤",
    "doctor": "👨‍⚕️",
    "chemist": "💊",
    "pharmacist": "💊",
    "admin": "👑",
}


def collections_for_role(role: Optional[str]) -> Tuple[str, ...]:
    """Collections a role subscribes to; unknown roles get none"""
    return ROLE_COLLECTIONS.get((role or "").lower(), ())


@dataclass
class RoleNotification:
    """A change event that passed the role filter"""
    collection: str
    operation: str
    message: str
    data: Any = None


NotificationHandler = Callable[[RoleNotification], None]


def _singular(collection: str) -> str:
    return collection[:-1] if collection.endswith("s") else collection


class RoleSyncService:
    """Per-user orchestrator on top of the Sync Manager"""

    def __init__(
        self,
        sync_manager: Optional[SyncManager] = None,
        global_collections: Optional[List[str]] = None,
    ):
        self.sync_manager = sync_manager or get_sync_manager()
        if global_collections is None:
            global_collections = get_settings().global_collections
        self.global_collections = set(global_collections)

        self.is_initialized = False
        self.current_user: Optional[Dict[str, Any]] = None
        self.notifications: List[RoleNotification] = []

        self._unsubscribers: List[Callable[[], None]] = []
        self._handlers: List[NotificationHandler] = []

    @property
    def sync_service(self):
        return self.sync_manager.sync_service

    @property
    def role(self) -> str:
        if not self.current_user:
            return ""
        return str(self.current_user.get("role") or "").lower()

    # ========== Lifecycle ==========

    async def initialize(self, user: Dict[str, Any]) -> None:
        """
        Start syncing for an authenticated user {id, role, name}.

        Calling again for the same user id does nothing.
        """
        if self.is_initialized and self.current_user and self.current_user.get("id") == user.get("id"):
            logger.info(f"🔄 Sync already initialized for user: {user.get('id')}")
            return

        if self.is_initialized:
            await self.cleanup()

        try:
            logger.info(f"🚀 Initializing role sync for user: {user.get('name')} Role: {user.get('role')}")
            self.current_user = dict(user)

            await self.sync_manager.initialize(userId=user["id"], autoConnect=True)
            self._subscribe_role_collections()

            self.is_initialized = True
            logger.info("✅ Role sync initialized successfully")

        except Exception as e:
            logger.error(f"❌ Failed to initialize role sync: {e}")
            self._unsubscribe_all()
            self.current_user = None
            raise

    def _subscribe_role_collections(self) -> None:
        role = self.role
        collections = collections_for_role(role)
        if not collections:
            logger.info("🔍 Unknown role, using basic sync")
            return

        logger.info(f"📋 Setting up role-specific sync for: {role}")
        for collection in collections:
            unsubscribe = self.sync_service.subscribe(
                collection,
                lambda event, c=collection: self._handle_event(c, event),
            )
            self._unsubscribers.append(unsubscribe)

    def _unsubscribe_all(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def cleanup(self) -> None:
        """Drop every role subscription and forget the user (logout)"""
        logger.info("🧹 Cleaning up role sync...")
        self._unsubscribe_all()
        self.notifications.clear()
        self.is_initialized = False
        self.current_user = None

    # ========== Filtering ==========

    def is_relevant(self, collection: str, document: Any) -> bool:
        """Whether a document should reach this user's UI"""
        if self.role == "admin" or collection in self.global_collections:
            return True
        if not self.current_user:
            return False
        return document_references(document, self.current_user.get("id"))

    def _message_for(self, collection: str, operation: str) -> str:
        role = self.role
        if role == "admin":
            return f"{collection} updated"
        if operation == "delete":
            return f"{_singular(collection).capitalize()} removed"
        if operation == "sync":
            return f"{collection} synchronized"
        if role == "doctor" and operation == "add":
            return f"New {_singular(collection)} request"
        if role in ("chemist", "pharmacist") and collection == "prescriptions":
            return "New prescription to fill" if operation == "add" else "Prescription updated"
        return f"Your {_singular(collection)} has been updated"

    def _handle_event(self, collection: str, event: Dict[str, Any]) -> None:
        operation = event.get("operation")
        data = event.get("data")
        logger.debug(f"{ROLE_ICONS.get(self.role, '🔔')} {self.role} received {collection} {operation}")

        if operation == "sync":
            documents = [d for d in (data or []) if self.is_relevant(collection, d)]
            if not documents:
                return
            data = documents
        elif not self.is_relevant(collection, data):
            return

        self._emit(RoleNotification(
            collection=collection,
            operation=operation,
            message=self._message_for(collection, operation),
            data=data,
        ))

    # ========== Notifications ==========

    def on_notification(self, handler: NotificationHandler) -> Callable[[], None]:
        """Register a notification handler; returns its unsubscribe"""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(self, notification: RoleNotification) -> None:
        logger.info(f"🔔 Notification: {notification.message}")
        self.notifications.append(notification)
        for handler in list(self._handlers):
            try:
                handler(notification)
            except Exception as e:
                logger.error(f"Error in notification handler: {e}", exc_info=True)

    # ========== Status ==========

    def get_sync_status(self) -> Dict[str, Any]:
        status = self.sync_service.get_sync_status()
        return {
            "isInitialized": self.is_initialized,
            "currentUser": self.current_user,
            "channelConnected": status["connected"],
            "syncStatus": status,
        }

    async def force_sync(self) -> None:
        """
        Reconnect, which makes the hub send a fresh FULL_SYNC.

        Raises:
            NotInitializedError: Before initialize()
            Anything the reconnect raises is passed to the caller
        """
        if not self.is_initialized or not self.current_user:
            raise NotInitializedError("RoleSyncService")

        logger.info("🔄 Forcing full sync...")
        await self.sync_manager.reconnect(self.current_user["id"])
        logger.info("✅ Force sync completed")


# Global instance, created on first use
_role_sync_service: Optional[RoleSyncService] = None


def get_role_sync_service() -> RoleSyncService:
    global _role_sync_service
    if _role_sync_service is None:
        _role_sync_service = RoleSyncService()
    return _role_sync_service


def _reset_role_sync_service() -> None:
    """Reset the global instance - for testing only"""
    global _role_sync_service
    _role_sync_service = None
