from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from reelbox.db import ContentStore, create_session_maker, init_db
from reelbox.settings import Settings

MOVIES_CHANNEL = -1001000000001
WEBSERIES_CHANNEL = -1001000000002
ANIME_CHANNEL = -1001000000003


async def make_store() -> tuple[AsyncEngine, ContentStore]:
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(engine)
    return engine, ContentStore(create_session_maker(engine))


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite://",
        "bot_token": "123:test",
        "movies_channel_id": MOVIES_CHANNEL,
        "webseries_channel_id": WEBSERIES_CHANNEL,
        "anime_channel_id": ANIME_CHANNEL,
    }
    values.update(overrides)
    return Settings(**values)


async def add_demo_series(store: ContentStore, series_id: str = "demo123") -> None:
    await store.add_series(
        series_id=series_id,
        title="Demo Show",
        type="webseries",
        year=2021,
        channel_id=WEBSERIES_CHANNEL,
    )
