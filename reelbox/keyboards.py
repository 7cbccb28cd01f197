from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from reelbox.db import EpisodeInfo, SeasonInfo
from reelbox.identifiers import episode_token, season_token
from reelbox.services.captions import build_episode_label


def seasons_keyboard(series_id: str, seasons: list[SeasonInfo]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for season in seasons:
        builder.button(text=season.label, callback_data=season_token(series_id, season.season_number))
    builder.adjust(1)
    return builder.as_markup()


def episodes_keyboard(episodes: list[EpisodeInfo]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for episode in episodes:
        builder.button(text=build_episode_label(episode), callback_data=episode_token(episode.content_id))
    builder.adjust(1)
    return builder.as_markup()


def website_keyboard(website_url: str | None) -> InlineKeyboardMarkup | None:
    if not website_url:
        return None
    builder = InlineKeyboardBuilder()
    builder.button(text="🎥 Browse Content", url=website_url)
    return builder.as_markup()
