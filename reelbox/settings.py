from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, extra="ignore")

    log_level: str = "INFO"
    database_url: str
    redis_url: str = "redis://redis:6379/0"

    bot_token: str
    bot_username: str | None = None
    website_url: str | None = None
    telegram_api_base_url: str = "https://api.telegram.org"

    ingest_chat_id: int | None = None
    movies_channel_id: int
    webseries_channel_id: int
    anime_channel_id: int

    upload_idle_seconds: float = 5
    upload_cooldown_seconds: float = 1
    forward_timeout_seconds: float = 300
    forward_max_attempts: int = 3
    forward_backoff_seconds: float = 10

    pending_timeout_seconds: int = 24 * 60 * 60
    cancelled_retention_seconds: int = 60 * 60
    cleanup_interval_seconds: int = 600

    def channel_for(self, kind: str) -> int:
        channels = {
            "movie": self.movies_channel_id,
            "webseries": self.webseries_channel_id,
            "anime": self.anime_channel_id,
        }
        try:
            return channels[kind]
        except KeyError:
            raise ValueError(f"no storage channel for kind {kind!r}") from None


@lru_cache
def get_settings() -> Settings:
    return Settings()
