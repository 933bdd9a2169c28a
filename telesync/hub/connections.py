#!/usr/bin/env python3
"""
Hub Channel Connections

One HubConnection per accepted WebSocket. Outbound frames go through a
bounded queue drained by a writer task so a slow device never blocks a
broadcast; a device whose queue overflows is disconnected.
"""

import asyncio
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from telesync.protocol import encode_message

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class HubConnection:
    """
    A registered (user_id, device_id) channel

    Supports:
    - Non-blocking enqueue of outbound messages
    - Liveness from socket state, refreshed by inbound frames
    - Idempotent close/stop
    """

    def __init__(
        self,
        websocket: WebSocket,
        user_id: str,
        device_id: str,
        queue_size: int = 256
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.device_id = device_id
        self.is_alive = True
        self.connected_at = datetime.now(UTC)
        self.messages_sent = 0

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closed = False
        self._socket_closed = False

    def __repr__(self) -> str:
        return f"HubConnection(user={self.user_id}, device={self.device_id})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the writer task (must run inside the event loop)"""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer())

    @property
    def socket_open(self) -> bool:
        """True while both ends of the WebSocket report CONNECTED"""
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_alive(self) -> None:
        self.is_alive = True

    def enqueue(self, message: Dict[str, Any]) -> bool:
        """
        Queue a message for this device.

        Returns:
            False if the channel is closed or its queue overflowed
        """
        if self._closed:
            return False

        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self._closed = True
            logger.warning(
                f"Outbound queue full for user={self.user_id} device={self.device_id}, dropping channel"
            )
            self._close_task = asyncio.create_task(
                self.close(CLOSE_TRY_AGAIN_LATER, "Outbound queue overflow")
            )
            return False

    async def _writer(self) -> None:
        """Drain the outbound queue in order"""
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_text(encode_message(message))
                self.messages_sent += 1
            except Exception as e:
                logger.error(f"Failed to send to {self.user_id}/{self.device_id}: {e}")
                self._closed = True
                return

    async def stop(self) -> None:
        """Stop the writer without touching the socket"""
        self._closed = True
        if self._writer_task:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Stop writing and close the socket"""
        if self._socket_closed:
            return
        self._socket_closed = True

        await self.stop()
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            # Socket already closed by the peer
            logger.debug(f"Close skipped for {self.user_id}/{self.device_id}: {e}")
        logger.info(f"Closed channel user={self.user_id} device={self.device_id} ({code} {reason})")
