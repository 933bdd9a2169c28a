"""
Sync Channel Connection Policy

Connection state, reconnect backoff, and health tracking for the client's
transport channel. No sockets here; RealtimeSyncService drives it.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """State of the sync channel"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"  # retries exhausted, HTTP backup only


@dataclass
class RetryConfig:
    """Reconnect policy for the sync channel"""
    max_retries: int = 5
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: float = 0.1  # ±10% randomization

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_retries=settings.reconnect_max_retries,
            initial_delay=settings.reconnect_initial_delay,
            max_delay=settings.reconnect_max_delay,
            backoff_multiplier=settings.reconnect_backoff_multiplier,
            jitter=settings.reconnect_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Base delay before the given 1-based attempt, without jitter"""
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


@dataclass
class ConnectionHealth:
    """Tracks sync channel health"""
    last_connected: Optional[datetime] = None
    last_sync: Optional[datetime] = None
    consecutive_failures: int = 0
    total_reconnects: int = 0
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_error: Optional[str] = None

    def record_success(self) -> None:
        """Record an opened channel"""
        self.last_connected = datetime.now(UTC)
        self.consecutive_failures = 0
        self.state = ConnectionState.CONNECTED
        self.last_error = None

    def record_failure(self, error: str) -> None:
        """Record a failed open or a dropped channel"""
        self.consecutive_failures += 1
        self.last_error = error

    def record_reconnect(self) -> None:
        """Record reconnection attempt"""
        self.total_reconnects += 1
        self.state = ConnectionState.RECONNECTING

    def record_sync(self) -> None:
        self.last_sync = datetime.now(UTC)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "consecutive_failures": self.consecutive_failures,
            "total_reconnects": self.total_reconnects,
            "state": self.state.value,
            "last_error": self.last_error,
        }


class ConnectionRetryHandler:
    """
    Yields reconnect delays with exponential backoff.

    Every attempt waits first: initial_delay, then doubling (by default)
    up to max_delay, for at most max_retries attempts.

    Usage:
        handler = ConnectionRetryHandler(config)
        async for delay in handler:
            if await open_channel():
                handler.mark_success()
                break
            handler.mark_failure("refused")
        if not handler.succeeded:
            ...  # exhausted
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self._attempt = 0
        self._exhausted = False
        self._succeeded = False

    def __aiter__(self):
        self._attempt = 0
        self._exhausted = False
        self._succeeded = False
        return self

    async def __anext__(self) -> float:
        """Sleep for the next delay and return it, or stop when exhausted"""
        if self._exhausted or self._attempt >= self.config.max_retries:
            self._exhausted = True
            raise StopAsyncIteration

        self._attempt += 1
        delay = self._calculate_delay()

        logger.info(
            f"🔄 Reconnecting in {delay:.2f}s (attempt {self._attempt}/{self.config.max_retries})"
        )
        if delay > 0:
            await asyncio.sleep(delay)

        return delay

    def _calculate_delay(self) -> float:
        """Calculate delay with exponential backoff and jitter"""
        delay = self.config.delay_for(self._attempt)

        # Add jitter
        jitter_range = delay * self.config.jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    def mark_success(self) -> None:
        """Mark connection as successful, stops iteration"""
        self._succeeded = True
        self._exhausted = True

    def mark_failure(self, error: str) -> None:
        """Mark connection as failed, continues iteration"""
        logger.warning(
            f"Reconnect attempt {self._attempt}/{self.config.max_retries} failed: {error}"
        )

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    @property
    def succeeded(self) -> bool:
        return self._succeeded
