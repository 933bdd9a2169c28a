"""
Realtime Sync Service

Client side of the multi-device sync engine. Owns the local durable store
and the WebSocket channel to the hub.

Features:
- Optimistic local writes (read-your-writes, works offline)
- Last-writer-wins apply of remote updates by lastModified
- Durable FIFO outbox replayed on reconnect
- Reconnect with exponential backoff, then HTTP backup polling only
"""

import asyncio
import itertools
import logging
import random
import string
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from telesync.client.connection import (
    ConnectionHealth,
    ConnectionRetryHandler,
    ConnectionState,
    RetryConfig,
)
from telesync.client.local_store import LocalStore, PendingChange
from telesync.errors import DocumentNotFoundError, ProtocolError, SyncConnectionError
from telesync.protocol import (
    MessageType,
    client_envelope,
    decode_message,
    delete_payload,
    encode_message,
    now_ms,
    update_payload,
)

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Listener = Callable[[Dict[str, Any]], None]
ConnectFactory = Callable[[str], Awaitable[Any]]

# Failures that mean "the channel is gone", handled by the reconnect logic
CHANNEL_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, SyncConnectionError)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _as_millis(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class RealtimeSyncService:
    """
    Device-local replica of the user's collections

    Channel messages handled:
    - FULL_SYNC: replace every collection present
    - DATA_UPDATE: upsert unless the local copy is as new or newer
    - DATA_DELETE: remove if present
    - PING: answered with PONG
    """

    def __init__(
        self,
        store: LocalStore,
        retry_config: Optional[RetryConfig] = None,
        backup_interval: float = 30.0,
        connect_timeout: float = 10.0,
        http_timeout: float = 10.0,
        connect_factory: Optional[ConnectFactory] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.retry_config = retry_config or RetryConfig()
        self.backup_interval = backup_interval
        self.connect_timeout = connect_timeout
        self.http_timeout = http_timeout
        self._connect_factory = connect_factory or self._websocket_connect
        self._http_transport = http_transport

        # Identity and endpoints (set by initialize)
        self.user_id = ""
        self.device_id = ""
        self.websocket_endpoint: Optional[str] = None
        self.http_endpoint: Optional[str] = None

        # Channel state
        self.state = ConnectionState.DISCONNECTED
        self.health = ConnectionHealth()
        self.reconnect_attempts = 0
        self._channel: Optional[Any] = None
        self._closing = False
        self._retries_exhausted = False
        self._last_stamp = 0

        # Changes sent since connecting that the hub's snapshots may not show yet
        self._awaiting_sync = False
        self._confirmed = False
        self._in_flight: List[PendingChange] = []

        # Background tasks
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._backup_task: Optional[asyncio.Task] = None

        # Serializes outbox flushes with new sends
        self._send_lock = asyncio.Lock()

        # collection -> [(token, callback)]
        self._listeners: Dict[str, List[Tuple[int, Listener]]] = {}
        self._listener_tokens = itertools.count(1)
        self._state_callbacks: List[Callable[[ConnectionState], None]] = []

    @classmethod
    def from_settings(cls, settings, store: Optional[LocalStore] = None, **kwargs) -> "RealtimeSyncService":
        return cls(
            store=store or LocalStore(settings.local_db_path),
            retry_config=RetryConfig.from_settings(settings),
            backup_interval=settings.backup_sync_interval,
            connect_timeout=settings.connect_timeout,
            http_timeout=settings.http_timeout,
            **kwargs,
        )

    # ========== Lifecycle ==========

    async def initialize(
        self,
        user_id: str,
        device_id: str,
        websocket_endpoint: Optional[str] = None,
        http_endpoint: Optional[str] = None,
    ) -> None:
        """
        Open the channel for (user_id, device_id) and start backup polling.

        Pending changes are replayed as soon as the channel is up. A failed
        first attempt hands over to the reconnect policy.
        """
        await self._stop_tasks()

        self.user_id = user_id
        self.device_id = device_id
        if websocket_endpoint:
            self.websocket_endpoint = websocket_endpoint
        if http_endpoint:
            self.http_endpoint = http_endpoint

        self._closing = False
        self._retries_exhausted = False
        self.reconnect_attempts = 0

        logger.info(f"🔄 Initializing sync service for user: {user_id}, device: {device_id}")
        logger.info(f"🌐 WebSocket endpoint: {self.websocket_endpoint}")
        logger.info(f"📡 HTTP endpoint: {self.http_endpoint}")

        if not await self._open_channel():
            self._schedule_reconnect()

        self._start_backup_sync()

    async def disconnect(self) -> None:
        """Tear down the channel; store, outbox and listeners are kept"""
        self._closing = True
        await self._stop_tasks()
        self._awaiting_sync = False
        self._in_flight = []
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("🔌 Sync service disconnected")

    async def close(self) -> None:
        """Disconnect and drop every listener"""
        await self.disconnect()
        self._listeners.clear()
        self._state_callbacks.clear()

    async def _stop_tasks(self) -> None:
        for task in (self._reconnect_task, self._backup_task, self._reader_task):
            if task and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._backup_task = None
        self._reader_task = None

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except CHANNEL_ERRORS as e:
                logger.debug(f"Channel close error: {e}")

    # ========== Channel ==========

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._channel is not None

    @property
    def is_synced(self) -> bool:
        """Connected and the snapshot answering our REQUEST_SYNC is applied"""
        return self.is_connected and not self._awaiting_sync

    def _channel_url(self) -> str:
        if not self.websocket_endpoint:
            raise SyncConnectionError("No WebSocket endpoint configured")
        query = httpx.QueryParams({"userId": self.user_id, "deviceId": self.device_id})
        return f"{self.websocket_endpoint}?{query}"

    async def _websocket_connect(self, url: str) -> Any:
        """Default transport: a websockets client connection"""
        return await websockets.connect(
            url,
            open_timeout=self.connect_timeout,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
        )

    async def _open_channel(self) -> bool:
        """
        Single connection attempt.

        Returns:
            True once the channel is open, the outbox is flushed and
            REQUEST_SYNC is sent
        """
        if self.state != ConnectionState.RECONNECTING:
            self._set_state(ConnectionState.CONNECTING)
        logger.info("🌐 Connecting to sync hub...")

        try:
            channel = await self._connect_factory(self._channel_url())
        except CHANNEL_ERRORS as e:
            self.health.record_failure(str(e))
            self._set_state(ConnectionState.DISCONNECTED)
            logger.warning(f"Failed to open sync channel: {e}")
            return False

        self._channel = channel
        self.health.record_success()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("✅ Sync channel connected")

        try:
            await self._on_connected()
        except CHANNEL_ERRORS as e:
            logger.warning(f"Channel lost during initial sync: {e}")
            self.health.record_failure(str(e))
            self._channel = None
            try:
                await channel.close()
            except CHANNEL_ERRORS as close_error:
                logger.debug(f"Channel close error: {close_error}")
            self._awaiting_sync = False
            self._in_flight = []
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        self._reader_task = asyncio.create_task(self._read_loop(channel))
        return True

    async def _on_connected(self) -> None:
        """
        Replay the outbox, then request a snapshot that already contains it.

        The hub's connect-time FULL_SYNC predates the replay, so replayed
        changes stay in flight (overlaid on snapshots) until the FULL_SYNC
        answering our REQUEST_SYNC arrives after CONNECTION_CONFIRMED.
        """
        self._awaiting_sync = True
        self._confirmed = False
        self._in_flight = []
        async with self._send_lock:
            await self._flush_pending()
        await self._send_message(client_envelope(MessageType.REQUEST_SYNC, self.user_id, self.device_id))

    async def _read_loop(self, channel: Any) -> None:
        reason = "closed by hub"
        try:
            async for raw in channel:
                try:
                    await self.handle_message(raw)
                except Exception as e:
                    logger.error(f"Error handling sync message: {e}", exc_info=True)
        except ConnectionClosed as e:
            reason = str(e)
        except OSError as e:
            reason = str(e)

        if channel is self._channel and not self._closing:
            self._on_channel_lost(reason)

    def _on_channel_lost(self, reason: str) -> None:
        logger.info(f"🔴 Sync channel closed ({reason}), scheduling reconnect...")
        self._channel = None
        self._awaiting_sync = False
        self._in_flight = []
        self.health.record_failure(reason)
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self._retries_exhausted:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        handler = ConnectionRetryHandler(self.retry_config)
        self.health.record_reconnect()
        self._set_state(ConnectionState.RECONNECTING)

        async for _delay in handler:
            if self._closing:
                return
            self.reconnect_attempts += 1
            if await self._open_channel():
                handler.mark_success()
                return
            handler.mark_failure(self.health.last_error or "unknown error")
            self._set_state(ConnectionState.RECONNECTING)

        if not handler.succeeded and not self._closing:
            self._retries_exhausted = True
            self._set_state(ConnectionState.FAILED)
            logger.error(
                f"❌ Max reconnection attempts reached ({self.retry_config.max_retries}), "
                f"continuing with HTTP backup sync only"
            )

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        self.health.state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> None:
        """Register callback for connection state changes"""
        self._state_callbacks.append(callback)

    # ========== Sending ==========

    async def _send_message(self, message: Dict[str, Any]) -> None:
        channel = self._channel
        if channel is None:
            raise SyncConnectionError("Sync channel is not open")
        await channel.send(encode_message(message))

    async def _send_change(self, change_type: str, data: Dict[str, Any]) -> None:
        await self._send_message(
            client_envelope(MessageType(change_type), self.user_id, self.device_id, data)
        )

    async def _send_or_queue(
        self,
        change_type: MessageType,
        collection: str,
        document_id: str,
        data: Dict[str, Any],
    ) -> bool:
        """
        Send a mutation now, or persist it to the outbox.

        Returns:
            True if it went out on the channel immediately
        """
        async with self._send_lock:
            if self.is_connected and self.store.pending_count() == 0:
                try:
                    await self._send_change(change_type.value, data)
                    self._track_in_flight(change_type.value, collection, document_id, data)
                    logger.debug(f"📤 Sent {change_type.value} for {collection}:{document_id}")
                    return True
                except CHANNEL_ERRORS as e:
                    logger.warning(f"Send failed, queueing change: {e}")

            self.store.enqueue_change(change_type.value, collection, document_id, data, now_ms())
            logger.info(f"📦 Stored pending change: {change_type.value} {collection}:{document_id}")

            if self.is_connected:
                try:
                    await self._flush_pending()
                except CHANNEL_ERRORS as e:
                    logger.warning(f"Outbox flush interrupted: {e}")
        return False

    def _track_in_flight(self, change_type: str, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        if self._awaiting_sync:
            self._in_flight.append(PendingChange(
                seq=0,
                change_type=change_type,
                collection=collection,
                document_id=str(document_id),
                payload=data,
                created_at=now_ms(),
            ))

    async def _flush_pending(self) -> int:
        """Replay the outbox in order; caller holds _send_lock"""
        changes = self.store.pending_changes()
        if not changes:
            return 0

        logger.info(f"🔄 Syncing {len(changes)} pending changes...")
        for change in changes:
            await self._send_change(change.change_type, change.payload)
            self.store.remove_change(change.seq)
            if self._awaiting_sync:
                self._in_flight.append(change)

        logger.info("✅ Pending changes synced")
        return len(changes)

    async def sync_pending_changes(self) -> int:
        """Flush the outbox if the channel is open; returns changes sent"""
        if not self.is_connected:
            return 0
        async with self._send_lock:
            before = self.store.pending_count()
            try:
                return await self._flush_pending()
            except CHANNEL_ERRORS as e:
                logger.warning(f"Outbox flush interrupted: {e}")
                return before - self.store.pending_count()

    # ========== CRUD ==========

    def _next_timestamp(self, previous: Any = None) -> int:
        """Epoch millis strictly after anything this device stamped before"""
        stamp = max(now_ms(), self._last_stamp + 1, _as_millis(previous) + 1)
        self._last_stamp = stamp
        return stamp

    @staticmethod
    def generate_id() -> str:
        suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
        return f"{now_ms()}_{suffix}"

    async def add_data(self, collection: str, data: Dict[str, Any]) -> str:
        """Add a document locally and propagate it; returns its id"""
        document = {
            **data,
            "id": str(data.get("id") or self.generate_id()),
            "lastModified": self._next_timestamp(),
            "deviceId": self.device_id,
            "userId": self.user_id,
        }

        self.store.put_document(collection, document)
        self._notify(collection, "add", document)

        await self._send_or_queue(
            MessageType.DATA_UPDATE, collection, document["id"], update_payload(collection, document)
        )
        return document["id"]

    async def update_data(self, collection: str, document_id: str, updates: Dict[str, Any]) -> Document:
        """
        Merge updates into an existing document and propagate it.

        Raises:
            DocumentNotFoundError: If the id is not held locally
        """
        existing = self.store.get_document(collection, document_id)
        if existing is None:
            raise DocumentNotFoundError(collection, document_id)

        document = {
            **existing,
            **updates,
            "id": existing["id"],
            "lastModified": self._next_timestamp(existing.get("lastModified")),
            "deviceId": self.device_id,
        }

        self.store.put_document(collection, document)
        self._notify(collection, "update", document)

        await self._send_or_queue(
            MessageType.DATA_UPDATE, collection, document_id, update_payload(collection, document)
        )
        return document

    async def delete_data(self, collection: str, document_id: str) -> None:
        """Delete locally (no-op if absent) and propagate the delete"""
        existing = self.store.get_document(collection, document_id)
        self.store.remove_document(collection, document_id)
        self._notify(collection, "delete", existing or {"id": document_id})

        await self._send_or_queue(
            MessageType.DATA_DELETE, collection, document_id, delete_payload(collection, document_id)
        )

    def get_data(self, collection: str) -> List[Document]:
        """Current local contents of a collection"""
        return self.store.get_collection(collection)

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        return self.store.get_document(collection, document_id)

    # ========== Subscriptions ==========

    def subscribe(self, collection: str, callback: Listener) -> Callable[[], None]:
        """
        Listen for changes to a collection.

        The callback receives {"operation", "data", "collection"} where
        operation is add, update, delete or sync.

        Returns:
            Function removing exactly this registration
        """
        token = next(self._listener_tokens)
        self._listeners.setdefault(collection, []).append((token, callback))

        def unsubscribe() -> None:
            registrations = self._listeners.get(collection)
            if not registrations:
                return
            self._listeners[collection] = [
                (t, cb) for t, cb in registrations if t != token
            ]
            if not self._listeners[collection]:
                del self._listeners[collection]

        return unsubscribe

    def listener_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._listeners.get(collection, []))
        return sum(len(registrations) for registrations in self._listeners.values())

    def _notify(self, collection: str, operation: str, data: Any) -> None:
        event = {"operation": operation, "data": data, "collection": collection}
        for _token, callback in list(self._listeners.get(collection, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in listener callback for {collection}: {e}", exc_info=True)

    # ========== Incoming messages ==========

    async def handle_message(self, raw: Any) -> None:
        """Apply one frame received from the hub"""
        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.error(f"Error parsing sync message: {e.details.get('reason')}")
            return

        message_type = message["type"]
        data = message.get("data")

        if message_type == MessageType.DATA_UPDATE.value:
            self.apply_remote_update(data)
        elif message_type == MessageType.DATA_DELETE.value:
            self.apply_remote_delete(data)
        elif message_type == MessageType.FULL_SYNC.value:
            self.apply_full_sync(data)
            if self._awaiting_sync and self._confirmed:
                self._awaiting_sync = False
                self._in_flight = []
        elif message_type == MessageType.CONNECTION_CONFIRMED.value:
            self._confirmed = True
            logger.info(f"🤝 Hub confirmed connection for device {message.get('deviceId')}")
        elif message_type == MessageType.PING.value:
            try:
                await self._send_message({"type": MessageType.PONG.value, "timestamp": now_ms()})
            except CHANNEL_ERRORS as e:
                logger.debug(f"PONG not sent: {e}")
        elif message_type == MessageType.ERROR.value:
            logger.warning(f"Hub reported error: {message.get('message')}")
        else:
            logger.warning(f"Unknown message type: {message_type}")

    def apply_remote_update(self, data: Any) -> bool:
        """
        Upsert a document received from another device.

        Returns:
            False when discarded (malformed, or local copy as new or newer)
        """
        if not isinstance(data, dict):
            logger.warning("DATA_UPDATE without data ignored")
            return False

        collection = data.get("collection")
        document = data.get("document")
        if not isinstance(collection, str) or not isinstance(document, dict) or "id" not in document:
            logger.warning("DATA_UPDATE with invalid payload ignored")
            return False

        incoming = _as_millis(document.get("lastModified", data.get("timestamp")))
        local = self.store.get_document(collection, str(document["id"]))

        if local is not None and _as_millis(local.get("lastModified")) >= incoming:
            logger.debug(f"📅 Local {collection}:{document['id']} is newer, skipping update")
            return False

        self.store.put_document(collection, document)
        self._notify(collection, "update" if local is not None else "add", document)
        return True

    def apply_remote_delete(self, data: Any) -> bool:
        if not isinstance(data, dict) or not isinstance(data.get("collection"), str):
            logger.warning("DATA_DELETE with invalid payload ignored")
            return False

        collection = data["collection"]
        document_id = str(data.get("documentId"))
        existing = self.store.get_document(collection, document_id)
        if existing is None:
            return False

        self.store.remove_document(collection, document_id)
        self._notify(collection, "delete", existing)
        return True

    def apply_full_sync(self, data: Any) -> List[str]:
        """
        Replace every collection present in a FULL_SYNC payload.

        Changes still waiting in the outbox are laid over the snapshot so
        offline writes survive until the hub has them.

        Returns:
            Names of the collections replaced
        """
        if not isinstance(data, dict):
            logger.warning("FULL_SYNC without data ignored")
            return []

        logger.info("🔄 Performing full sync...")
        pending = self._in_flight + self.store.pending_changes()
        replaced = []

        for collection, documents in data.items():
            if not isinstance(documents, list):
                continue
            merged = self._overlay_pending(collection, documents, pending)
            self.store.replace_collection(collection, merged)
            self._notify(collection, "sync", merged)
            replaced.append(collection)

        self.health.record_sync()
        logger.info("✅ Full sync completed")
        return replaced

    @staticmethod
    def _overlay_pending(
        collection: str,
        documents: List[Any],
        pending: List[PendingChange],
    ) -> List[Document]:
        merged = [doc for doc in documents if isinstance(doc, dict) and "id" in doc]

        for change in pending:
            if change.collection != collection:
                continue

            if change.change_type == MessageType.DATA_DELETE.value:
                merged = [doc for doc in merged if str(doc["id"]) != change.document_id]
                continue

            document = change.payload.get("document")
            if not isinstance(document, dict):
                continue
            for index, doc in enumerate(merged):
                if str(doc["id"]) == change.document_id:
                    if _as_millis(doc.get("lastModified")) <= _as_millis(document.get("lastModified")):
                        merged[index] = document
                    break
            else:
                merged.append(document)

        return merged

    # ========== HTTP backup ==========

    def _start_backup_sync(self) -> None:
        if self._backup_task is None or self._backup_task.done():
            self._backup_task = asyncio.create_task(self._backup_sync_loop())

    async def _backup_sync_loop(self) -> None:
        """Poll the hub over HTTP while the channel is down"""
        while True:
            await asyncio.sleep(self.backup_interval)
            if self.is_connected:
                continue
            try:
                logger.info("📡 Performing backup HTTP sync...")
                await self.perform_http_sync()
            except Exception as e:
                logger.error(f"Backup sync loop error: {e}")

    async def perform_http_sync(self) -> bool:
        """
        One HTTP backup sync: GET {http_endpoint}/sync/{user_id}.

        Returns:
            True if a snapshot was applied
        """
        if not self.http_endpoint or not self.user_id:
            return False

        url = f"{self.http_endpoint.rstrip('/')}/sync/{self.user_id}"
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, transport=self._http_transport) as client:
                response = await client.get(
                    url,
                    headers={"Content-Type": "application/json", "Device-ID": self.device_id},
                )

            if response.status_code != 200:
                logger.warning(f"HTTP sync rejected: status {response.status_code}")
                return False
            data = response.json()

        except httpx.HTTPError as e:
            logger.error(f"HTTP sync failed: {e}")
            return False
        except ValueError as e:
            logger.error(f"HTTP sync returned invalid JSON: {e}")
            return False

        self.apply_full_sync(data)
        logger.info("✅ HTTP sync completed")
        return True

    # ========== Status ==========

    def is_healthy(self) -> bool:
        """Channel open and nothing waiting in the outbox"""
        return self.is_connected and self.store.pending_count() == 0

    def get_sync_status(self) -> Dict[str, Any]:
        pending = self.store.pending_count()
        return {
            "connected": self.is_connected,
            "state": self.state.value,
            "pendingChanges": pending,
            "healthy": self.is_connected and pending == 0,
            "synced": self.is_synced,
            "userId": self.user_id or None,
            "deviceId": self.device_id or None,
            "retriesExhausted": self._retries_exhausted,
            "health": self.health.to_dict(),
        }


# Global instance, created on first use
_sync_service: Optional[RealtimeSyncService] = None


def get_sync_service() -> RealtimeSyncService:
    """Get the process-wide sync service built from settings"""
    global _sync_service
    if _sync_service is None:
        from telesync.config import get_settings
        _sync_service = RealtimeSyncService.from_settings(get_settings())
    return _sync_service


def _reset_sync_service() -> None:
    """Reset the global instance - for testing only"""
    global _sync_service
    _sync_service = None
