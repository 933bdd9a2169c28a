"""
Unified Configuration Management for Telesync

Hub and client settings in one place using Pydantic BaseSettings.
All settings can be overridden via environment variables with TELESYNC_ prefix.

Usage:
    from telesync.config import get_settings

    settings = get_settings()
    print(settings.hub_port)
    print(settings.websocket_endpoint)
"""

from pathlib import Path
from typing import Literal
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TelesyncSettings(BaseSettings):
    """
    Unified configuration for Telesync

    All settings can be overridden via environment variables with TELESYNC_ prefix.
    Example: TELESYNC_HUB_PORT=9090
    """

    model_config = SettingsConfigDict(
        env_prefix="TELESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # SYSTEM SETTINGS
    # ============================================

    environment: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # HUB SETTINGS
    # ============================================

    hub_host: str = Field(
        default="0.0.0.0",
        description="Hub bind address"
    )

    hub_port: int = Field(
        default=8080,
        description="Hub listen port"
    )

    websocket_path: str = Field(
        default="/sync",
        description="Path of the sync WebSocket endpoint"
    )

    ping_interval: float = Field(
        default=30.0,
        description="Seconds between liveness sweeps of open channels"
    )

    stats_interval: float = Field(
        default=60.0,
        description="Seconds between hub statistics log lines"
    )

    outbound_queue_size: int = Field(
        default=256,
        description="Max queued outbound frames per channel before it is dropped"
    )

    global_collections: list[str] = Field(
        default=["doctors"],
        description="Collections shared by every user"
    )

    default_user_collections: list[str] = Field(
        default=["consultations", "appointments", "prescriptions", "medicalRecords"],
        description="Collections every new user store starts with"
    )

    # ============================================
    # CLIENT SETTINGS
    # ============================================

    server_url: str = Field(
        default="http://localhost:8080",
        description="Base HTTP URL of the hub"
    )

    data_dir: Path = Field(
        default=Path.home() / ".telesync",
        description="Directory holding the client's local store"
    )

    backup_sync_interval: float = Field(
        default=30.0,
        description="Seconds between HTTP backup polls while the channel is down"
    )

    connect_timeout: float = Field(
        default=10.0,
        description="WebSocket open timeout in seconds"
    )

    http_timeout: float = Field(
        default=10.0,
        description="HTTP backup poll timeout in seconds"
    )

    reconnect_max_retries: int = Field(
        default=5,
        description="Reconnect attempts before falling back to HTTP polling only"
    )

    reconnect_initial_delay: float = Field(
        default=1.0,
        description="Delay before the first reconnect attempt (seconds)"
    )

    reconnect_max_delay: float = Field(
        default=30.0,
        description="Upper bound for a single reconnect delay (seconds)"
    )

    reconnect_backoff_multiplier: float = Field(
        default=2.0,
        description="Multiplier applied to the delay after each failed attempt"
    )

    reconnect_jitter: float = Field(
        default=0.1,
        description="Relative randomization of reconnect delays (0.1 = ±10%)"
    )

    # ============================================
    # DEVICE LINKING SETTINGS
    # ============================================

    link_secret_key: str = Field(
        default="",
        description="Secret used to sign sync and device linking tokens"
    )

    link_token_algorithm: Literal["HS256", "HS384", "HS512"] = Field(
        default="HS256",
        description="JWT algorithm for linking tokens (HMAC only)"
    )

    link_token_ttl_minutes: int = Field(
        default=10,
        description="Lifetime of a device linking token"
    )

    # ============================================
    # VALIDATORS
    # ============================================

    @field_validator("data_dir", mode="after")
    @classmethod
    def expand_data_dir(cls, v: Path) -> Path:
        """Expand ~ in the data directory"""
        return v.expanduser()

    @field_validator(
        "ping_interval", "stats_interval", "backup_sync_interval", "outbound_queue_size",
        mode="after",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def validate_reconnect_policy(self) -> "TelesyncSettings":
        """Reconnect delays must be ordered"""
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError(
                "reconnect_max_delay must be >= reconnect_initial_delay"
            )
        if self.reconnect_max_retries < 0:
            raise ValueError("reconnect_max_retries cannot be negative")
        return self

    @model_validator(mode="after")
    def validate_link_secret(self) -> "TelesyncSettings":
        """Production deployments need a real signing secret"""
        insecure_defaults = {"", "secret", "changeme"}
        if self.environment == "production" and self.link_secret_key.lower() in insecure_defaults:
            raise ValueError(
                "TELESYNC_LINK_SECRET_KEY must be set to a strong value in production"
            )
        return self

    # ============================================
    # DERIVED VALUES
    # ============================================

    @property
    def local_db_path(self) -> Path:
        """Client local store database path"""
        return self.data_dir / "sync_store.db"

    @property
    def http_endpoint(self) -> str:
        """HTTP API base derived from server_url"""
        return f"{self.server_url.rstrip('/')}/api"

    @property
    def websocket_endpoint(self) -> str:
        """WebSocket endpoint derived from server_url"""
        return websocket_url_for(self.server_url, self.websocket_path)


def websocket_url_for(server_url: str, path: str = "/sync") -> str:
    """Map an http(s) base URL to the ws(s) sync endpoint"""
    base = server_url.rstrip("/")
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    return f"{base}{path}"


# ============================================
# SINGLETON PATTERN
# ============================================

@lru_cache()
def get_settings() -> TelesyncSettings:
    """
    Get cached settings instance (singleton pattern)

    Returns:
        TelesyncSettings: Application settings
    """
    return TelesyncSettings()
