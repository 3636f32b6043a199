"""Main entry point for botpanel.

Builds storage (Postgres when DATABASE_URL is set, memory otherwise), the bot
service and the dashboard app, then serves it with uvicorn.
"""
import asyncio

import uvicorn

from botpanel.config import Settings
from botpanel.dashboard import create_app
from botpanel.manager import BotService
from botpanel.utils import db as db_utils
from botpanel.utils.logger import configure_logging, get_logger
from botpanel.utils.storage import MemoryStorage, PostgresStorage, Storage

logger = get_logger("botpanel.run")


async def build_storage(settings: Settings) -> Storage:
    if not settings.DATABASE_URL:
        logger.info("DATABASE_URL not set: using in-memory storage (state is lost on restart)")
        return MemoryStorage(log_retention=settings.LOG_RETENTION, metrics_retention=settings.METRICS_RETENTION)

    pool = await db_utils.init_pool(settings.DATABASE_URL, min_size=settings.DB_POOL_MIN, max_size=settings.DB_POOL_MAX)
    await db_utils.apply_migrations(settings.DATABASE_URL)
    return PostgresStorage(pool, log_retention=settings.LOG_RETENTION, metrics_retention=settings.METRICS_RETENTION)


async def serve(settings: Settings) -> None:
    storage = await build_storage(settings)
    service = BotService(settings, storage)
    app = create_app(service, api_key=settings.API_KEY, manage_service=True)
    config = uvicorn.Config(app, host=settings.DASHBOARD_HOST, port=settings.DASHBOARD_PORT, log_level=settings.LOG_LEVEL.lower())
    try:
        await uvicorn.Server(config).serve()
    finally:
        await db_utils.close_pool()


def main() -> None:
    settings = Settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    missing = settings.validate()
    if missing:
        logger.error("Missing required settings: %s", ", ".join(missing))
        return
    logger.info("botpanel serving on %s:%s", settings.DASHBOARD_HOST, settings.DASHBOARD_PORT)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
