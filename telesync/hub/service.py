"""
Sync Hub Service

Routes frames between device channels:
- FULL_SYNC + CONNECTION_CONFIRMED on connect, FULL_SYNC again on REQUEST_SYNC
- DATA_UPDATE / DATA_DELETE on a global collection reach every channel
- DATA_UPDATE / DATA_DELETE on a user collection reach the sender's other devices

All state access goes through one asyncio.Lock, and fan-out happens while
the lock is held, so every device observes updates in hub processing order.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from telesync.errors import ProtocolError
from telesync.hub.connections import HubConnection, CLOSE_GOING_AWAY, CLOSE_NORMAL
from telesync.hub.state import HubState
from telesync.protocol import (
    MessageType,
    decode_message,
    error_message,
    full_sync_message,
    connection_confirmed_message,
    relay_message,
    ping_message,
)

logger = logging.getLogger(__name__)


class SyncHub:
    """Owner of HubState and the hub's background tasks"""

    def __init__(
        self,
        state: Optional[HubState] = None,
        ping_interval: float = 30.0,
        stats_interval: float = 60.0,
        queue_size: int = 256,
    ):
        self.state = state or HubState()
        self.ping_interval = ping_interval
        self.stats_interval = stats_interval
        self.queue_size = queue_size

        self._lock = asyncio.Lock()
        self._ping_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings) -> "SyncHub":
        state = HubState(
            global_collections=settings.global_collections,
            default_user_collections=settings.default_user_collections,
        )
        return cls(
            state=state,
            ping_interval=settings.ping_interval,
            stats_interval=settings.stats_interval,
            queue_size=settings.outbound_queue_size,
        )

    # ===== Channel lifecycle =====

    async def connect(self, connection: HubConnection) -> None:
        """Register a channel and send it the user's current data"""
        async with self._lock:
            self.state.register(connection)
            snapshot = self.state.snapshot(connection.user_id)
            connection.enqueue(full_sync_message(snapshot))
            connection.enqueue(
                connection_confirmed_message(connection.user_id, connection.device_id)
            )

        logger.info(
            f"🔌 New connection: user={connection.user_id} device={connection.device_id} "
            f"(collections: {', '.join(sorted(snapshot))})"
        )

    async def disconnect(self, connection: HubConnection) -> None:
        await connection.stop()
        async with self._lock:
            removed = self.state.unregister(connection)
        if removed:
            logger.info(f"🔌 Disconnected: user={connection.user_id} device={connection.device_id}")

    # ===== Frame handling =====

    async def handle_frame(self, connection: HubConnection, raw: Any) -> None:
        """Decode and dispatch one inbound frame"""
        connection.mark_alive()

        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(
                f"Malformed frame from {connection.user_id}/{connection.device_id}: "
                f"{e.details.get('reason')}"
            )
            connection.enqueue(error_message())
            return

        message_type = message["type"]
        logger.debug(f"📨 {message_type} from {connection.device_id}")

        try:
            if message_type == MessageType.REQUEST_SYNC.value:
                await self.send_full_sync(connection)
            elif message_type == MessageType.DATA_UPDATE.value:
                await self.handle_update(connection, message)
            elif message_type == MessageType.DATA_DELETE.value:
                await self.handle_delete(connection, message)
            elif message_type == MessageType.PONG.value:
                pass
            else:
                logger.warning(f"⚠️ Unknown message type: {message_type}")
        except ProtocolError as e:
            logger.warning(f"Rejected {message_type} from {connection.device_id}: {e.message}")
            connection.enqueue(error_message())

    async def send_full_sync(self, connection: HubConnection) -> None:
        async with self._lock:
            snapshot = self.state.snapshot(connection.user_id)
            connection.enqueue(full_sync_message(snapshot))

    async def handle_update(self, connection: HubConnection, message: Dict[str, Any]) -> int:
        """
        Store the document and relay it.

        Returns:
            Number of channels the update was queued for
        """
        data = message.get("data")
        if not isinstance(data, dict):
            raise ProtocolError("DATA_UPDATE without data")

        collection = data.get("collection")
        document = data.get("document")
        if not isinstance(collection, str) or not isinstance(document, dict) or "id" not in document:
            raise ProtocolError("DATA_UPDATE requires collection and document.id")

        timestamp = data.get("timestamp", message.get("timestamp"))
        relay = relay_message(
            MessageType.DATA_UPDATE, data, connection.device_id, timestamp
        )

        async with self._lock:
            if not self.state.upsert(connection.user_id, collection, document):
                logger.info(f"📅 Stale update ignored for {collection}:{document['id']}")
                return 0

            if self.state.is_global(collection):
                recipients = self.state.all_connections()
                logger.info(f"💾 Updated global {collection}: {document['id']}")
            else:
                recipients = self.state.sibling_connections(connection)
                logger.info(f"💾 Updated {collection} for user {connection.user_id}: {document['id']}")

            return self._fan_out(recipients, relay)

    async def handle_delete(self, connection: HubConnection, message: Dict[str, Any]) -> int:
        data = message.get("data")
        if not isinstance(data, dict):
            raise ProtocolError("DATA_DELETE without data")

        collection = data.get("collection")
        document_id = data.get("documentId")
        if not isinstance(collection, str) or document_id is None:
            raise ProtocolError("DATA_DELETE requires collection and documentId")

        relay = relay_message(MessageType.DATA_DELETE, data, connection.device_id)

        async with self._lock:
            if self.state.remove(connection.user_id, collection, document_id):
                logger.info(f"🗑️ Deleted {collection}:{document_id} for user {connection.user_id}")

            if self.state.is_global(collection):
                recipients = self.state.all_connections()
            else:
                recipients = self.state.sibling_connections(connection)

            return self._fan_out(recipients, relay)

    def _fan_out(self, recipients: List[HubConnection], message: Dict[str, Any]) -> int:
        delivered = 0
        for recipient in recipients:
            if recipient.enqueue(message):
                delivered += 1
        logger.debug(f"📤 Broadcast {message['type']} to {delivered} channel(s)")
        return delivered

    # ===== HTTP fallback =====

    async def http_snapshot(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        async with self._lock:
            return self.state.snapshot(user_id, create=False)

    # ===== Liveness and stats =====

    async def sweep_liveness(self) -> List[HubConnection]:
        """
        Terminate channels whose socket is gone, then ping the rest.

        A channel with an open socket counts as alive; dead peers on an
        open-looking socket are caught by the server's protocol-level
        pings, which close the socket. A channel whose socket no longer
        reports CONNECTED survives one sweep only if it sends a frame
        (PONG or anything else) before the next one. A channel whose
        writer already failed is terminated right away.

        Returns:
            The terminated connections
        """
        dead: List[HubConnection] = []
        async with self._lock:
            for connection in self.state.all_connections():
                if connection.closed:
                    dead.append(connection)
                    continue
                if connection.socket_open:
                    connection.mark_alive()
                if not connection.is_alive:
                    dead.append(connection)
                    continue
                connection.is_alive = False
                connection.enqueue(ping_message())

        for connection in dead:
            logger.warning(
                f"💀 Terminating dead connection: user={connection.user_id} device={connection.device_id}"
            )
            await connection.close(CLOSE_GOING_AWAY, "Ping timeout")
            async with self._lock:
                self.state.unregister(connection)

        return dead

    async def log_stats(self) -> Dict[str, int]:
        async with self._lock:
            connections, users, entries = self.state.stats()
        logger.info(f"📊 Stats: {connections} connections, {users} users, {entries} data entries")
        return {"connections": connections, "users": users, "data_entries": entries}

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.sweep_liveness()
            except Exception as e:
                logger.error(f"Liveness sweep error: {e}")

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval)
            try:
                await self.log_stats()
            except Exception as e:
                logger.error(f"Stats task error: {e}")

    async def start(self) -> None:
        """Start background tasks (called by app lifespan)"""
        if self._ping_task is None:
            self._ping_task = asyncio.create_task(self._ping_loop())
        if self._stats_task is None:
            self._stats_task = asyncio.create_task(self._stats_loop())
        logger.info(f"✅ Hub tasks started (ping every {self.ping_interval}s)")

    async def stop(self) -> None:
        """Stop background tasks and close every channel"""
        for task in (self._ping_task, self._stats_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._ping_task = None
        self._stats_task = None

        async with self._lock:
            connections = self.state.all_connections()
        for connection in connections:
            await connection.close(CLOSE_NORMAL, "Server shutting down")
        logger.info("✅ Hub stopped")
