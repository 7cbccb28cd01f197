from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass, field
from html import escape
from urllib.parse import unquote

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup
from sqlalchemy.exc import SQLAlchemyError

from reelbox import keyboards
from reelbox.db import ContentStore, EpisodeInfo, MovieInfo, SeriesInfo
from reelbox.errors import MalformedIdentifier, NotFoundError
from reelbox.identifiers import (
    EPISODE_TOKEN_PREFIX,
    SEASON_TOKEN_PREFIX,
    parse_episode_token,
    parse_season_token,
)
from reelbox.models import ContentKind
from reelbox.services.resolver import (
    IdentifierResolver,
    ResolvedEpisode,
    ResolvedMovie,
    ResolvedSeries,
)

logger = logging.getLogger("reelbox.dispatcher")

WELCOME_TEXT = (
    "Welcome to the download bot! 🤖\n\n"
    "This bot delivers movies, web series and anime.\n\n"
    "Browse the website, press \"Download\" and the content is sent here automatically."
)
NOT_FOUND_TEXT = (
    "❌ Sorry, the requested content was not found.\n\n"
    "Please check the link and try again."
)
UNAVAILABLE_TEXT = "⏳ This content is still being uploaded. Please try again in a few minutes."
FAILED_TEXT = "❌ An error occurred while processing your request. Please try again later."
NO_SEASONS_TEXT = "No seasons available for this series."
NO_EPISODES_TEXT = "❌ No episodes found for this season."


class DeliveryState(str, enum.Enum):
    AWAITING_ENTRY = "awaiting_entry"
    RESOLVING = "resolving"
    SHOW_SEASONS = "show_seasons"
    SEASON_CHOSEN = "season_chosen"
    SHOW_EPISODES = "show_episodes"
    EPISODE_CHOSEN = "episode_chosen"
    DELIVER_MOVIE = "deliver_movie"
    DELIVER_EPISODE = "deliver_episode"
    NOT_FOUND = "not_found"
    EMPTY = "empty"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.AWAITING_ENTRY: frozenset({DeliveryState.RESOLVING}),
    DeliveryState.RESOLVING: frozenset(
        {
            DeliveryState.DELIVER_MOVIE,
            DeliveryState.DELIVER_EPISODE,
            DeliveryState.SHOW_SEASONS,
            DeliveryState.UNAVAILABLE,
        }
    ),
    DeliveryState.SHOW_SEASONS: frozenset({DeliveryState.SEASON_CHOSEN, DeliveryState.EMPTY}),
    DeliveryState.SEASON_CHOSEN: frozenset({DeliveryState.SHOW_EPISODES, DeliveryState.EMPTY}),
    DeliveryState.SHOW_EPISODES: frozenset({DeliveryState.EPISODE_CHOSEN}),
    DeliveryState.EPISODE_CHOSEN: frozenset(
        {DeliveryState.DELIVER_EPISODE, DeliveryState.UNAVAILABLE}
    ),
}
# Reachable from every non-terminal state.
ABORT_STATES = frozenset({DeliveryState.NOT_FOUND, DeliveryState.FAILED})

_RECORDED_STATUS = {
    DeliveryState.DELIVER_MOVIE: "delivered",
    DeliveryState.DELIVER_EPISODE: "delivered",
    DeliveryState.NOT_FOUND: "not_found",
    DeliveryState.EMPTY: "empty",
    DeliveryState.UNAVAILABLE: "unavailable",
    DeliveryState.FAILED: "failed",
}


@dataclass(frozen=True)
class ChatRef:
    chat_id: int
    user_id: int | None = None
    message_id: int | None = None


@dataclass
class Interaction:
    chat: ChatRef
    state: DeliveryState
    content_id: str | None = None
    kind: str | None = None
    trail: list[DeliveryState] = field(default_factory=list)

    def advance(self, target: DeliveryState) -> None:
        allowed = TRANSITIONS.get(self.state, frozenset())
        if target not in allowed and not (target in ABORT_STATES and self.state in TRANSITIONS):
            raise RuntimeError(f"invalid delivery transition {self.state.value} -> {target.value}")
        self.trail.append(self.state)
        self.state = target


class DeliveryDispatcher:
    """Walks one chat interaction from an id or a selection token to a delivered artifact."""

    def __init__(
        self,
        bot: Bot,
        store: ContentStore,
        resolver: IdentifierResolver,
        *,
        website_url: str | None = None,
    ) -> None:
        self._bot = bot
        self._store = store
        self._resolver = resolver
        self._website_url = website_url
        self._chat_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    async def start(self, chat: ChatRef, payload: str | None) -> DeliveryState:
        async with self._chat_lock(chat.chat_id):
            interaction = Interaction(chat=chat, state=DeliveryState.AWAITING_ENTRY)
            if not payload or not payload.strip():
                await self._send(chat.chat_id, WELCOME_TEXT, keyboards.website_keyboard(self._website_url))
                return interaction.state
            interaction.content_id = unquote(payload.strip())
            return await self._run(interaction, self._resolve_and_route)

    async def select(self, chat: ChatRef, token: str) -> DeliveryState:
        async with self._chat_lock(chat.chat_id):
            if token.startswith(SEASON_TOKEN_PREFIX):
                interaction = Interaction(chat=chat, state=DeliveryState.SHOW_SEASONS, content_id=token)
                return await self._run(interaction, self._choose_season)
            interaction = Interaction(chat=chat, state=DeliveryState.SHOW_EPISODES, content_id=token)
            if token.startswith(EPISODE_TOKEN_PREFIX):
                return await self._run(interaction, self._choose_episode)
            return await self._run(interaction, self._reject_token)

    def _chat_lock(self, chat_id: int) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        return lock

    async def _run(self, interaction: Interaction, step) -> DeliveryState:
        error: str | None = None
        try:
            await step(interaction)
        except (NotFoundError, MalformedIdentifier) as exc:
            error = str(exc)
            logger.info(
                "content not found",
                extra={
                    "action": "delivery_not_found",
                    "tg_user_id": interaction.chat.user_id,
                    "content_id": interaction.content_id,
                    "reason": error,
                },
            )
            interaction.advance(DeliveryState.NOT_FOUND)
            await self._send(
                interaction.chat.chat_id,
                NOT_FOUND_TEXT,
                keyboards.website_keyboard(self._website_url),
            )
        except Exception as exc:
            error = str(exc)
            logger.exception(
                "delivery failed",
                extra={
                    "action": "delivery_failed",
                    "tg_user_id": interaction.chat.user_id,
                    "content_id": interaction.content_id,
                    "state": interaction.state.value,
                },
            )
            interaction.state = DeliveryState.FAILED
            await self._send(interaction.chat.chat_id, FAILED_TEXT)
        status = _RECORDED_STATUS.get(interaction.state)
        if status is not None:
            await self._record(interaction, status, error)
        return interaction.state

    async def _resolve_and_route(self, interaction: Interaction) -> None:
        interaction.advance(DeliveryState.RESOLVING)
        resolution = await self._resolver.resolve(interaction.content_id)
        if isinstance(resolution, ResolvedMovie):
            await self._deliver_movie(interaction, resolution.item)
        elif isinstance(resolution, ResolvedEpisode):
            await self._deliver_episode(interaction, resolution.item)
        elif isinstance(resolution, ResolvedSeries):
            await self._show_seasons(interaction, resolution.item)
        else:
            raise NotFoundError(interaction.content_id)

    async def _show_seasons(self, interaction: Interaction, series: SeriesInfo) -> None:
        interaction.kind = ContentKind.SERIES.value
        interaction.content_id = series.series_id
        interaction.advance(DeliveryState.SHOW_SEASONS)
        seasons = await self._store.list_seasons(series.series_id)
        if not seasons:
            interaction.advance(DeliveryState.EMPTY)
            await self._send(interaction.chat.chat_id, NO_SEASONS_TEXT)
            return
        await self._send(
            interaction.chat.chat_id,
            f"Select a season for <b>{escape(series.title)}</b>:",
            keyboards.seasons_keyboard(series.series_id, seasons),
        )

    async def _choose_season(self, interaction: Interaction) -> None:
        selection = parse_season_token(interaction.content_id)
        interaction.kind = ContentKind.SERIES.value
        interaction.content_id = selection.series_id
        interaction.advance(DeliveryState.SEASON_CHOSEN)
        series = await self._store.find_series(selection.series_id)
        if series is None:
            raise NotFoundError(selection.series_id, kind="series")
        season = await self._store.find_season(series.series_id, selection.season_number)
        if season is None:
            raise NotFoundError(f"{series.series_id} season {selection.season_number}", kind="season")
        episodes = await self._store.list_episodes(series.series_id, season.season_number)
        if not episodes:
            interaction.advance(DeliveryState.EMPTY)
            await self._send(interaction.chat.chat_id, NO_EPISODES_TEXT)
            return
        interaction.advance(DeliveryState.SHOW_EPISODES)
        lines = [f"📺 <b>{escape(series.title)}</b>"]
        if series.year:
            lines[0] += f" ({series.year})"
        lines.append(escape(season.label))
        lines.extend(["", f"Episodes: {len(episodes)}", "Select an episode:"])
        await self._replace_or_send(
            interaction.chat,
            "\n".join(lines),
            keyboards.episodes_keyboard(episodes),
        )

    async def _choose_episode(self, interaction: Interaction) -> None:
        content_id = parse_episode_token(interaction.content_id)
        interaction.kind = ContentKind.EPISODE.value
        interaction.content_id = content_id
        interaction.advance(DeliveryState.EPISODE_CHOSEN)
        episode = await self._store.find_episode(content_id)
        if episode is None:
            raise NotFoundError(content_id, kind="episode")
        await self._deliver_episode(interaction, episode)

    async def _reject_token(self, interaction: Interaction) -> None:
        raise MalformedIdentifier(interaction.content_id, "unknown selection token")

    async def _deliver_movie(self, interaction: Interaction, movie: MovieInfo) -> None:
        interaction.kind = ContentKind.MOVIE.value
        if movie.stored_message_id is None:
            interaction.advance(DeliveryState.UNAVAILABLE)
            await self._send(interaction.chat.chat_id, UNAVAILABLE_TEXT)
            return
        await self._bot.copy_message(
            chat_id=interaction.chat.chat_id,
            from_chat_id=movie.channel_id,
            message_id=movie.stored_message_id,
        )
        interaction.advance(DeliveryState.DELIVER_MOVIE)
        await self._send(
            interaction.chat.chat_id,
            f"✅ <b>{escape(movie.title)}</b> sent successfully! 🎬\n\nEnjoy watching!",
            keyboards.website_keyboard(self._website_url),
        )

    async def _deliver_episode(self, interaction: Interaction, episode: EpisodeInfo) -> None:
        interaction.kind = ContentKind.EPISODE.value
        interaction.content_id = episode.content_id
        if episode.stored_message_id is None:
            interaction.advance(DeliveryState.UNAVAILABLE)
            await self._send(interaction.chat.chat_id, UNAVAILABLE_TEXT)
            return
        await self._bot.copy_message(
            chat_id=interaction.chat.chat_id,
            from_chat_id=episode.channel_id,
            message_id=episode.stored_message_id,
        )
        interaction.advance(DeliveryState.DELIVER_EPISODE)
        label = f"Episode {episode.episode_number}"
        if episode.title:
            label += f": {escape(episode.title)}"
        await self._send(
            interaction.chat.chat_id,
            f"✅ Here's your episode: <b>{escape(episode.series_title)}</b>"
            f" - {escape(episode.season_label)} - {label}",
        )

    async def _send(
        self,
        chat_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> None:
        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                reply_markup=reply_markup,
            )
        except TelegramAPIError as exc:
            logger.warning(
                "failed to send message: %s",
                exc,
                extra={"action": "delivery_send_failed", "chat_id": chat_id},
            )

    async def _replace_or_send(
        self,
        chat: ChatRef,
        text: str,
        reply_markup: InlineKeyboardMarkup | None,
    ) -> None:
        if chat.message_id is not None:
            try:
                await self._bot.edit_message_text(
                    text=text,
                    chat_id=chat.chat_id,
                    message_id=chat.message_id,
                    parse_mode="HTML",
                    reply_markup=reply_markup,
                )
                return
            except TelegramBadRequest as exc:
                logger.info("Failed to edit message: %s", exc)
        await self._send(chat.chat_id, text, reply_markup)

    async def _record(self, interaction: Interaction, status: str, error: str | None) -> None:
        try:
            await self._store.record_delivery(
                chat_id=interaction.chat.chat_id,
                tg_user_id=interaction.chat.user_id,
                content_id=interaction.content_id,
                kind=interaction.kind,
                status=status,
                error=error,
            )
        except SQLAlchemyError:
            logger.exception(
                "failed to record delivery",
                extra={"action": "delivery_record_failed", "content_id": interaction.content_id},
            )
