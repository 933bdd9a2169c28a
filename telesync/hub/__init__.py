"""
Sync Hub

In-memory relay holding per-user and global collections and fanning out
mutations between device channels.

Usage:
    from telesync.hub import create_app

    app = create_app()
"""

from telesync.hub.state import HubState
from telesync.hub.connections import HubConnection
from telesync.hub.service import SyncHub
from telesync.hub.app import create_app, main

__all__ = [
    "HubState",
    "HubConnection",
    "SyncHub",
    "create_app",
    "main",
]
