"""
Sync wire protocol

JSON text frames exchanged over the sync channel. Clients send
``{type, data, userId, deviceId, timestamp}``; the hub answers with the
envelopes built below.
"""

import json
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from telesync.errors import ProtocolError


class MessageType(str, Enum):
    """Frame types understood by hub and client"""
    FULL_SYNC = "FULL_SYNC"
    CONNECTION_CONFIRMED = "CONNECTION_CONFIRMED"
    DATA_UPDATE = "DATA_UPDATE"
    DATA_DELETE = "DATA_DELETE"
    REQUEST_SYNC = "REQUEST_SYNC"
    ERROR = "ERROR"
    # Application level liveness
    PING = "PING"
    PONG = "PONG"


INVALID_MESSAGE_FORMAT = "Invalid message format"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def decode_message(raw: Any) -> Dict[str, Any]:
    """
    Decode a text frame into a message dict.

    Raises:
        ProtocolError: If the frame is not a JSON object with a type
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(details={"reason": str(e)})

    if not isinstance(message, dict) or not message.get("type"):
        raise ProtocolError(details={"reason": "message must be an object with a type"})
    return message


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


# ===== Client -> Hub =====

def client_envelope(
    message_type: MessageType,
    user_id: str,
    device_id: str,
    data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    message = {
        "type": message_type.value,
        "userId": user_id,
        "deviceId": device_id,
        "timestamp": now_ms(),
    }
    if data is not None:
        message["data"] = data
    return message


def update_payload(collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "collection": collection,
        "document": document,
        "timestamp": document.get("lastModified", now_ms()),
    }


def delete_payload(collection: str, document_id: str) -> Dict[str, Any]:
    return {"collection": collection, "documentId": document_id}


# ===== Hub -> Client =====

def full_sync_message(data: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
    return {
        "type": MessageType.FULL_SYNC.value,
        "data": data,
        "timestamp": now_ms(),
    }


def connection_confirmed_message(user_id: str, device_id: str) -> Dict[str, Any]:
    return {
        "type": MessageType.CONNECTION_CONFIRMED.value,
        "userId": user_id,
        "deviceId": device_id,
        "timestamp": now_ms(),
    }


def relay_message(
    message_type: MessageType,
    data: Dict[str, Any],
    from_device: str,
    timestamp: Optional[int] = None
) -> Dict[str, Any]:
    """DATA_UPDATE / DATA_DELETE as rebroadcast to other channels"""
    return {
        "type": message_type.value,
        "data": data,
        "timestamp": timestamp if timestamp is not None else now_ms(),
        "fromDevice": from_device,
    }


def error_message(message: str = INVALID_MESSAGE_FORMAT) -> Dict[str, Any]:
    return {"type": MessageType.ERROR.value, "message": message}


def ping_message() -> Dict[str, Any]:
    return {"type": MessageType.PING.value, "timestamp": now_ms()}
