"""
Shared pytest fixtures for Telesync tests.

Provides:
- Settings fixture (isolated data dir, fast timers)
- Local store fixture (temporary SQLite file)
- Fake sync channel for driving the client without a hub
- Singleton reset between tests
"""

import sys
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from telesync.config import TelesyncSettings, get_settings
from telesync.client.local_store import LocalStore


# ============================================================================
# Settings / Storage Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path: Path) -> TelesyncSettings:
    """Settings pointing at a temporary data dir with quiet timers"""
    return TelesyncSettings(
        environment="testing",
        data_dir=tmp_path / "data",
        ping_interval=3600,
        stats_interval=3600,
        backup_sync_interval=3600,
        reconnect_max_retries=2,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.01,
        reconnect_jitter=0,
        link_secret_key="test-link-secret-key-with-enough-length",
    )


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    """Fresh local store in a temporary file"""
    return LocalStore(tmp_path / "store.db")


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop process-wide instances so tests never share state"""
    from telesync.client import (
        _reset_sync_service,
        _reset_sync_manager,
        _reset_role_sync_service,
        _reset_device_session_service,
    )

    get_settings.cache_clear()
    yield
    _reset_sync_service()
    _reset_sync_manager()
    _reset_role_sync_service()
    _reset_device_session_service()
    get_settings.cache_clear()


# ============================================================================
# Fake Channel
# ============================================================================

class FakeChannel:
    """
    Stand-in for a websockets client connection.

    Frames sent by the client are recorded in `sent`; frames pushed with
    `feed()` are yielded to the client's reader. `drop()` ends iteration as
    if the hub closed the socket.
    """

    _CLOSED = object()

    def __init__(self, fail_sends: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.fail_sends = fail_sends
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, raw: str) -> None:
        if self.fail_sends or self.closed:
            raise OSError("channel unavailable")
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(self._CLOSED)

    def feed(self, message: Dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def drop(self) -> None:
        self._incoming.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    def sent_types(self) -> List[str]:
        return [message["type"] for message in self.sent]


class FakeConnector:
    """
    connect_factory for RealtimeSyncService.

    Hands out queued FakeChannels; raises OSError when `available` is False.
    With `fail_sends` set, handed-out channels reject every send.
    """

    def __init__(self):
        self.available = True
        self.fail_sends = False
        self.urls: List[str] = []
        self.channels: List[FakeChannel] = []

    async def __call__(self, url: str) -> FakeChannel:
        self.urls.append(url)
        if not self.available:
            raise OSError("connection refused")
        channel = FakeChannel(fail_sends=self.fail_sends)
        self.channels.append(channel)
        return channel

    @property
    def last(self) -> FakeChannel:
        return self.channels[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


async def settle(rounds: int = 5) -> None:
    """Let background tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)
