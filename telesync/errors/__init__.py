"""
Error handling for Telesync

Usage:
    from telesync.errors import DocumentNotFoundError, ProtocolError
"""

from telesync.errors.types import (
    ErrorType,
    SyncError,
    DocumentNotFoundError,
    ProtocolError,
    SyncConnectionError,
    NotInitializedError,
    AuthenticationRequiredError,
    DeviceLinkError,
)

__all__ = [
    "ErrorType",
    "SyncError",
    "DocumentNotFoundError",
    "ProtocolError",
    "SyncConnectionError",
    "NotInitializedError",
    "AuthenticationRequiredError",
    "DeviceLinkError",
]
