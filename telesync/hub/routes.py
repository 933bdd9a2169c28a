"""
Sync Hub routes

- WebSocket sync channel (path from settings.websocket_path, default /sync)
- GET /api/sync/{user_id}: HTTP fallback returning the FULL_SYNC data shape

No authentication: the hub trusts the userId supplied in the handshake.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Request, WebSocket, WebSocketDisconnect

from telesync.hub.connections import HubConnection, CLOSE_POLICY_VIOLATION
from telesync.hub.service import SyncHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_hub(scope_owner) -> SyncHub:
    """SyncHub stored on the FastAPI app by create_app()"""
    return scope_owner.app.state.sync_hub


# ===== WebSocket Endpoint =====

async def sync_websocket(
    websocket: WebSocket,
    userId: Optional[str] = Query(None),
    deviceId: Optional[str] = Query(None),
) -> None:
    """
    Device sync channel

    Handshake: ?userId=...&deviceId=...
    Connections missing either are rejected before accept.
    """
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"

    if not userId or not deviceId:
        logger.warning(f"❌ WebSocket rejected from {client}: missing userId or deviceId")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Missing userId or deviceId")
        return

    hub = get_hub(websocket)
    await websocket.accept()

    connection = HubConnection(websocket, userId, deviceId, queue_size=hub.queue_size)
    connection.start()
    await hub.connect(connection)

    try:
        # Message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(code=message.get("code", 1000))

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await hub.handle_frame(connection, raw)

    except WebSocketDisconnect as e:
        logger.debug(f"Channel closed by {deviceId} (code {e.code})")

    except Exception as e:
        logger.error(f"WebSocket error for {userId}/{deviceId}: {e}", exc_info=True)

    finally:
        await hub.disconnect(connection)


# ===== REST Endpoints =====

@router.get("/{user_id}")
async def http_sync(
    user_id: str,
    request: Request,
    device_id: Optional[str] = Header(None, alias="Device-ID"),
):
    """
    Backup sync for devices whose channel is down

    Returns the same shape as FULL_SYNC.data
    """
    logger.info(f"📡 HTTP sync request from user: {user_id}, device: {device_id}")
    return await get_hub(request).http_snapshot(user_id)
