"""Chat Drive Relay application.

This is the main entry point for the relay service. Chat transports hand
media messages to the ChatHandler, which feeds a bounded-concurrency upload
queue that stores files in Google Drive (or a local directory during
development) and replies with a shareable link.

Modules:
    - uploads: hashing, duplicate index, upload queue, progress reporting
    - storage: Google Drive and local storage backends
    - chat: transport-neutral message handling, media staging, POST /messages
    - admin: roles, restrictions, warnings and audit log (DuckDB)
    - health: periodic health monitoring

Composition happens in the lifespan below; every long-lived component is
kept on ``app.state`` rather than in module globals.
"""
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from relay.admin import build_admin_service
from relay.admin.router import router as admin_router
from relay.chat.handler import ChatHandler
from relay.chat.router import router as chat_router
from relay.chat.staging import StagingArea
from relay.config import get_config
from relay.health.monitor import HealthMonitor
from relay.health.router import router as health_router
from relay.storage import build_storage_client
from relay.storage.router import router as files_router
from relay.uploads.progress import ProgressReporter, log_progress
from relay.uploads.queue import UploadQueue
from relay.uploads.router import router as uploads_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request and TLS handshake, including the
# Drive upload session URLs.
for _noisy in (
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    storage = build_storage_client(config)
    if not await storage.ensure_ready():
        logger.warning("Storage backend '%s' is not ready; uploads will fail until it is.",
                       config.storage.provider)

    upload_cfg = config.upload
    progress = ProgressReporter(
        interval=upload_cfg.progress_interval_seconds,
        high_water=upload_cfg.progress_high_water,
        buffer_size=upload_cfg.progress_buffer_size,
    )
    progress.subscribe(log_progress)

    staging = StagingArea(config.files.temp_dir, max_age=config.files.max_temp_file_age_seconds)
    admin = build_admin_service(config)
    handler = ChatHandler(config, staging, admin=admin)
    reply_client = httpx.AsyncClient(timeout=config.bot.reply_timeout_seconds)
    queue = UploadQueue.from_settings(upload_cfg, storage, handler, progress=progress)
    monitor = HealthMonitor(queue, config.health)
    handler.bind(queue, monitor)

    app.state.storage = storage
    app.state.upload_queue = queue
    app.state.chat_handler = handler
    app.state.health_monitor = monitor
    app.state.admin = admin
    app.state.reply_client = reply_client

    await progress.start()
    await staging.start()
    await queue.start()
    await monitor.start()
    logger.info(
        "%s v%s ready on http://%s:%s",
        config.bot.name, config.bot.version, config.server.host, config.server.port,
    )

    yield  # Application runs here

    # Shutdown
    await monitor.stop()
    await queue.stop()
    await staging.stop()
    await progress.stop()
    await reply_client.aclose()
    await storage.close()
    if admin is not None:
        admin.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Drive Relay API",
    description="Relays chat media to Google Drive and replies with shareable links",
    version="2.0.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(health_router)
app.include_router(uploads_router)
app.include_router(files_router)
app.include_router(chat_router)
app.include_router(admin_router)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "relay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
