"""
FastAPI application factory for the Sync Hub.

Creates the app, mounts the sync channel and fallback route, and runs the
hub's background tasks for the lifetime of the process.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from telesync import __version__
from telesync.config import TelesyncSettings, get_settings
from telesync.hub.routes import router, sync_websocket
from telesync.hub.service import SyncHub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Starts the liveness and stats tasks, closes every channel on shutdown.
    """
    hub: SyncHub = app.state.sync_hub

    # ===== STARTUP =====
    await hub.start()
    logger.info("🔄 Ready for multi-device synchronization")

    yield

    # ===== SHUTDOWN =====
    logger.info("🛑 Shutting down sync hub...")
    await hub.stop()


def create_app(settings: Optional[TelesyncSettings] = None) -> FastAPI:
    """
    Create and configure the Sync Hub application.

    Args:
        settings: Optional settings override (tests); defaults to get_settings()

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Telesync Hub",
        description="Multi-device sync relay for the telemedicine apps",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sync_hub = SyncHub.from_settings(settings)

    # Devices connect from LAN addresses and the web front end
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "Device-ID"],
    )

    app.add_api_websocket_route(settings.websocket_path, sync_websocket)
    app.include_router(router)

    return app


def main() -> None:
    """Run the hub with uvicorn (console script telesync-hub)"""
    import uvicorn

    from telesync.logging_config import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info(f"🚀 Multi-device sync hub on {settings.hub_host}:{settings.hub_port}")
    logger.info(f"📡 WebSocket endpoint: ws://{settings.hub_host}:{settings.hub_port}{settings.websocket_path}")
    logger.info(f"🌐 HTTP endpoint: http://{settings.hub_host}:{settings.hub_port}/api")

    uvicorn.run(
        create_app(settings),
        host=settings.hub_host,
        port=settings.hub_port,
        ws_ping_interval=settings.ping_interval,  # Protocol level keep-alive
        ws_ping_timeout=settings.ping_interval,
        ws="websockets",
    )


if __name__ == "__main__":
    main()
