"""
Error Types - Enums and exception classes for sync error handling

Contains:
- ErrorType enum (standardized error types)
- Exception classes (SyncError and subclasses)
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorType(Enum):
    """Standard error types"""
    # Local store errors
    DOCUMENT_NOT_FOUND = "document_not_found"

    # Wire protocol errors
    INVALID_MESSAGE = "invalid_message"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"

    # Transport errors
    CONNECTION_FAILED = "connection_failed"
    SEND_FAILED = "send_failed"

    # Lifecycle errors
    NOT_INITIALIZED = "not_initialized"

    # Device/session errors
    NOT_LOGGED_IN = "not_logged_in"
    LINK_EXPIRED = "link_expired"
    LINK_INVALID = "link_invalid"

    # Generic
    INTERNAL_ERROR = "internal_error"


class SyncError(Exception):
    """Base exception for Telesync"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_type.value,
            "message": self.message,
            "details": self.details,
        }


class DocumentNotFoundError(SyncError):
    """Update of a document id the local store does not hold"""

    def __init__(self, collection: str, document_id: str):
        super().__init__(
            message=f"Document {document_id} not found in {collection}",
            error_type=ErrorType.DOCUMENT_NOT_FOUND,
            details={"collection": collection, "document_id": document_id}
        )
        self.collection = collection
        self.document_id = document_id


class ProtocolError(SyncError):
    """Malformed or invalid wire message"""

    def __init__(
        self,
        message: str = "Invalid message format",
        error_type: ErrorType = ErrorType.INVALID_MESSAGE,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, error_type=error_type, details=details)


class SyncConnectionError(SyncError):
    """Transport channel could not be opened or written"""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.CONNECTION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message=message, error_type=error_type, details=details)


class NotInitializedError(SyncError):
    """Service used before initialize()"""

    def __init__(self, component: str):
        super().__init__(
            message=f"{component} not initialized. Call initialize() first.",
            error_type=ErrorType.NOT_INITIALIZED,
            details={"component": component}
        )


class AuthenticationRequiredError(SyncError):
    """Device bookkeeping requires a logged-in user"""

    def __init__(self, message: str = "No user logged in"):
        super().__init__(message=message, error_type=ErrorType.NOT_LOGGED_IN)


class DeviceLinkError(SyncError):
    """Device linking token rejected"""

    def __init__(self, message: str, expired: bool = False):
        super().__init__(
            message=message,
            error_type=ErrorType.LINK_EXPIRED if expired else ErrorType.LINK_INVALID
        )
        self.expired = expired
