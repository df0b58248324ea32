"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from door_manager.api.routes import router as api_router, set_manager
from door_manager.bot.commands import CommandHandler
from door_manager.bot.sessions import PendingInputStore
from door_manager.bot.telegram import TelegramPoller
from door_manager.config import settings
from door_manager.core.manager import DoorManager
from door_manager.db.database import init_db
from door_manager.scheduler.scheduler import ExpiryScheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting door manager...")

    # Initialize database
    await init_db()

    manager = DoorManager(settings)
    set_manager(manager)

    scheduler = ExpiryScheduler(
        on_sweep=manager.expire_sweep,
        count_expired=manager.count_expired,
        timezone=settings.tz,
        expiry_hour=settings.expiry_hour,
        catchup_interval_minutes=settings.catchup_interval_minutes,
    )
    scheduler.start()

    poller: Optional[TelegramPoller] = None
    if settings.telegram_bot_token:
        handler = CommandHandler(
            manager,
            PendingInputStore(ttl_seconds=settings.pending_input_ttl_seconds),
            settings.tz,
        )
        poller = TelegramPoller(
            settings.telegram_bot_token,
            handler,
            poll_timeout=settings.telegram_poll_timeout,
        )
        await poller.start()
    else:
        logger.info("No telegram bot token set, bot disabled.")

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down door manager...")
    if poller:
        await poller.stop()
    scheduler.stop()
    set_manager(None)
    await manager.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Door Manager",
    description="Door access codes for full and day pass members",
    version="0.1.0",
    lifespan=lifespan,
)

# Mount API routes
app.include_router(api_router, prefix="/api")


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "door_manager.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
