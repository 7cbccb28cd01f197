import asyncio
import logging

from aiogram import Bot, Dispatcher

from reelbox.db import ContentStore, create_engine, create_session_maker, init_db
from reelbox.handlers import build_router
from reelbox.logging_utils import configure_logging
from reelbox.redis import get_redis
from reelbox.services.dispatcher import DeliveryDispatcher
from reelbox.services.forwarder import ChannelForwarder
from reelbox.services.ingest import IngestService
from reelbox.services.maintenance import run_maintenance_loop
from reelbox.services.resolver import IdentifierResolver
from reelbox.settings import get_settings
from reelbox.workers.upload_queue import UploadQueue

logger = logging.getLogger("reelbox.main")


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    bot = Bot(token=settings.bot_token)
    dispatcher = Dispatcher()

    engine = create_engine(settings.database_url)
    await init_db(engine)
    store = ContentStore(create_session_maker(engine))
    redis = get_redis(settings.redis_url)

    forwarder = ChannelForwarder(settings.bot_token, settings.telegram_api_base_url)
    queue = UploadQueue(
        store,
        forwarder,
        idle_seconds=settings.upload_idle_seconds,
        cooldown_seconds=settings.upload_cooldown_seconds,
        forward_timeout_seconds=settings.forward_timeout_seconds,
        max_attempts=settings.forward_max_attempts,
        backoff_seconds=settings.forward_backoff_seconds,
    )
    await queue.restore()

    delivery = DeliveryDispatcher(
        bot,
        store,
        IdentifierResolver(store),
        website_url=settings.website_url,
    )
    ingest = IngestService(store, queue, settings)
    dispatcher.include_router(build_router(settings, delivery, ingest, queue, store, redis))

    queue.start()
    maintenance_task = asyncio.create_task(
        run_maintenance_loop(
            store,
            interval_seconds=settings.cleanup_interval_seconds,
            pending_timeout_seconds=settings.pending_timeout_seconds,
            cancelled_retention_seconds=settings.cancelled_retention_seconds,
        ),
        name="upload-maintenance",
    )
    logger.info("bot starting", extra={"action": "startup"})

    try:
        await dispatcher.start_polling(bot)
    finally:
        maintenance_task.cancel()
        await queue.stop()
        await bot.session.close()
        await redis.aclose()
        await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
