from __future__ import annotations

import logging
from dataclasses import dataclass

from reelbox.db import ContentStore, EpisodeInfo, MovieInfo, SeriesInfo
from reelbox.models import ContentKind

logger = logging.getLogger("reelbox.resolver")


@dataclass(frozen=True)
class ResolvedMovie:
    item: MovieInfo


@dataclass(frozen=True)
class ResolvedEpisode:
    item: EpisodeInfo


@dataclass(frozen=True)
class ResolvedSeries:
    item: SeriesInfo


@dataclass(frozen=True)
class NotResolved:
    identifier: str


Resolution = ResolvedMovie | ResolvedEpisode | ResolvedSeries | NotResolved


class IdentifierResolver:
    """Maps an opaque id to the entity it names.

    Ids registered with a type tag are looked up once under that kind. Untagged
    ids are probed in a fixed order (movie, episode, series) and the first hit
    wins, so a movie shadows a series carrying the same id.
    """

    def __init__(self, store: ContentStore) -> None:
        self._store = store

    async def resolve(self, identifier: str) -> Resolution:
        kind = await self._store.find_kind(identifier)
        if kind is not None:
            resolution = await self._resolve_kind(kind, identifier)
            if not isinstance(resolution, NotResolved):
                return resolution
            logger.warning(
                "tagged id has no entity, probing",
                extra={"action": "resolve_stale_tag", "content_id": identifier, "kind": kind},
            )
        return await self._probe(identifier)

    async def _resolve_kind(self, kind: str, identifier: str) -> Resolution:
        if kind == ContentKind.MOVIE.value:
            movie = await self._store.find_movie(identifier)
            if movie:
                return ResolvedMovie(movie)
        elif kind == ContentKind.EPISODE.value:
            episode = await self._store.find_episode(identifier)
            if episode:
                return ResolvedEpisode(episode)
        elif kind == ContentKind.SERIES.value:
            series = await self._store.find_series(identifier)
            if series:
                return ResolvedSeries(series)
        return NotResolved(identifier)

    async def _probe(self, identifier: str) -> Resolution:
        movie = await self._store.find_movie(identifier)
        if movie:
            return ResolvedMovie(movie)
        episode = await self._store.find_episode(identifier)
        if episode:
            return ResolvedEpisode(episode)
        series = await self._store.find_series(identifier)
        if series:
            return ResolvedSeries(series)
        return NotResolved(identifier)
