import logging
from datetime import datetime, timezone

from aiogram import F, Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import CallbackQuery, Message
from redis.asyncio import Redis
from redis.exceptions import RedisError

from reelbox.db import ContentStore, DeliveryStats
from reelbox.identifiers import deep_link
from reelbox.redis import acquire_debounce
from reelbox.services.dispatcher import ChatRef, DeliveryDispatcher
from reelbox.services.ingest import IngestError, IngestService, parse_ingest_caption
from reelbox.settings import Settings
from reelbox.workers.upload_queue import UploadQueue

logger = logging.getLogger("reelbox.handlers")

HELP_TEXT = (
    "📖 How it works:\n"
    "• Visit the website\n"
    "• Browse movies, web series or anime\n"
    "• Press the \"Download\" button\n"
    "• The content is sent to you here automatically!\n\n"
    "Commands:\n"
    "/start - Start the bot\n"
    "/help - Show this help message"
)
TEXT_ONLY_REPLY = "ℹ️ I can only send content via download links from the website. Use /help for more information."
INGEST_USAGE = (
    "ERROR bad_caption. Examples:\n"
    "reelbox: type=movie; title=Inception; year=2010\n"
    "reelbox: type=webseries; title=Dark; year=2017\n"
    "reelbox: series=<series_id>; season=1; episode=2; title=Lies"
)


def build_router(
    settings: Settings,
    dispatcher: DeliveryDispatcher,
    ingest: IngestService,
    queue: UploadQueue,
    store: ContentStore,
    redis: Redis,
) -> Router:
    router = Router()

    if settings.ingest_chat_id is not None:
        in_ingest_chat = F.chat.id == settings.ingest_chat_id

        @router.message(in_ingest_chat, Command("queue"))
        async def on_queue_status(message: Message) -> None:
            status = queue.status()
            await message.answer(
                "Upload queue\n"
                f"pending: {status.pending_count}\n"
                f"processing: {status.current_upload or '-'}\n"
                f"next: {status.head_id or '-'}"
            )

        @router.message(in_ingest_chat, Command("stats"))
        async def on_stats(message: Message) -> None:
            midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
            stats = await store.delivery_stats(since=midnight)
            await message.answer(format_stats(stats), parse_mode="HTML")

        @router.message(in_ingest_chat)
        async def on_ingest_message(message: Message) -> None:
            caption = (message.caption or message.text or "").strip()
            request = parse_ingest_caption(caption)
            if request is None:
                if message.video or message.document:
                    await message.answer(INGEST_USAGE)
                return
            file_id = None
            if message.video is not None:
                file_id = message.video.file_id
            elif message.document is not None:
                file_id = message.document.file_id
            logger.info(
                "ingest chat received",
                extra={
                    "action": "ingest_chat_received",
                    "chat_id": message.chat.id,
                    "message_id": message.message_id,
                    "kind": request.kind,
                    "has_file": file_id is not None,
                },
            )
            try:
                result = await ingest.register(request, file_id)
            except IngestError as exc:
                logger.warning(
                    "ingest rejected",
                    extra={"action": "ingest_rejected", "error_code": exc.code},
                )
                await message.answer(f"ERROR {exc.code}")
                return
            lines = [f"OK {result.identifier}"]
            if result.queued:
                lines.append(f"queued, position {queue.status().pending_count}")
            if settings.bot_username:
                lines.append(deep_link(settings.bot_username, result.identifier))
            await message.answer("\n".join(lines))

    @router.message(CommandStart())
    async def on_start(message: Message, command: CommandObject) -> None:
        chat = ChatRef(chat_id=message.chat.id, user_id=message.from_user.id if message.from_user else None)
        state = await dispatcher.start(chat, command.args)
        logger.info(
            "start handled",
            extra={
                "tg_user_id": chat.user_id,
                "action": "start",
                "request_id": str(message.message_id),
                "state": state.value,
            },
        )

    @router.message(Command("help"))
    async def on_help(message: Message) -> None:
        await message.answer(HELP_TEXT)

    @router.message(F.text & ~F.text.startswith("/"))
    async def on_text(message: Message) -> None:
        await message.answer(TEXT_ONLY_REPLY)

    @router.callback_query()
    async def on_callback(query: CallbackQuery) -> None:
        data = (query.data or "").strip()
        if not data:
            await query.answer()
            return
        tg_user_id = query.from_user.id
        if not await _debounce_callback(redis, tg_user_id, data):
            await query.answer("Too many requests")
            return
        await query.answer()
        logger.info(
            "callback received",
            extra={
                "tg_user_id": tg_user_id,
                "action": "callback",
                "request_id": query.id,
            },
        )
        chat_id = query.message.chat.id if query.message else tg_user_id
        message_id = query.message.message_id if query.message else None
        chat = ChatRef(chat_id=chat_id, user_id=tg_user_id, message_id=message_id)
        await dispatcher.select(chat, data)

    return router


def format_stats(stats: DeliveryStats) -> str:
    return (
        "📊 <b>Delivery statistics</b>\n\n"
        f"👥 <b>Unique users:</b> {stats.unique_users}\n"
        f"📨 <b>Total requests:</b> {stats.total}\n"
        f"✅ <b>Delivered:</b> {stats.delivered}\n"
        f"❌ <b>Failed:</b> {stats.failed}\n"
        f"📈 <b>Today:</b> {stats.since_count}"
    )


async def _debounce_callback(redis: Redis, tg_user_id: int, data: str) -> bool:
    try:
        return await acquire_debounce(redis, f"cb:{tg_user_id}:{data}")
    except RedisError:
        logger.warning("callback debounce unavailable", exc_info=True)
        return True
