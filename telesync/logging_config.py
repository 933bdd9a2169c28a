"""
Logging configuration for Telesync.

Sets the root level once and suppresses verbose logs from transport libraries.
"""

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure logging levels for hub and client processes.

    Args:
        level: Root log level name; defaults to settings.log_level
    """
    if level is None:
        from telesync.config import get_settings
        level = get_settings().log_level

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

    # Suppress DEBUG logs from httpcore and httpx to reduce terminal noise
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Frame level chatter from the WebSocket stack
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
