"""
Device Identity

Stable per-install device identifier used in the sync handshake.

The id is generated once as ``{platform}_{epochMillis}_{random}`` and kept
in the local store, so every later session of this install reuses it.

Usage:
    from telesync.client.device_identity import get_or_create_device_id

    device_id = get_or_create_device_id(store)
"""

import logging
import platform
import random
import string
import time
from datetime import datetime
from typing import Optional

from telesync.client.local_store import LocalStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "deviceId"
_BASE36 = string.digits + string.ascii_lowercase


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def current_platform() -> str:
    """Lower-case OS name (linux, darwin, windows, ...)"""
    return (platform.system() or "unknown").lower()


def generate_device_id(platform_name: Optional[str] = None) -> str:
    """New device id, not persisted"""
    platform_name = platform_name or current_platform()
    timestamp = int(time.time() * 1000)
    return f"{platform_name}_{timestamp}_{_random_suffix()}"


def get_or_create_device_id(store: LocalStore, platform_name: Optional[str] = None) -> str:
    """
    Return the persisted device id, creating it on first use.

    Args:
        store: Local store holding the id
        platform_name: Override for the platform prefix

    Returns:
        The stable device id
    """
    existing = store.get_value(DEVICE_ID_KEY)
    if existing:
        return existing

    device_id = generate_device_id(platform_name)
    store.set_value(DEVICE_ID_KEY, device_id)
    logger.info(f"📱 Generated new device id {device_id}")
    return device_id


def generate_device_name(platform_name: Optional[str] = None) -> str:
    """Human-readable label such as 'iPhone (2026-10-19)'"""
    platform_name = (platform_name or current_platform()).lower()
    today = datetime.now().strftime("%Y-%m-%d")

    if platform_name == "ios":
        return f"iPhone ({today})"
    if platform_name == "android":
        return f"Android ({today})"

    hostname = platform.node()
    if hostname:
        return f"{hostname} ({platform_name})"
    return f"{platform_name} Device"


def user_agent(app_name: str = "Telesync", version: str = "1.0.0") -> str:
    return f"{app_name}/{current_platform()}/{platform.release()}/{version}"
