from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from reelbox.errors import NotFoundError
from reelbox.identifiers import encode_episode_id
from reelbox.models import (
    Base,
    ContentKey,
    ContentKind,
    DeliveryRecord,
    Episode,
    Movie,
    Season,
    Series,
    UploadStatus,
)

# A failed item may be picked up again by a fresh enqueue.
_CLAIMABLE_STATUSES = (UploadStatus.PENDING.value, UploadStatus.FAILED.value)


@dataclass(frozen=True)
class DeliveryStats:
    unique_users: int
    total: int
    delivered: int
    failed: int
    since_count: int


@dataclass(frozen=True)
class MovieInfo:
    content_id: str
    title: str
    year: int | None
    description: str | None
    genre: list[str] | None
    file_id: str
    channel_id: int
    stored_message_id: int | None
    upload_status: str
    upload_error: str | None


@dataclass(frozen=True)
class SeriesInfo:
    series_id: str
    title: str
    type: str
    year: int | None
    description: str | None
    genre: list[str] | None
    channel_id: int


@dataclass(frozen=True)
class SeasonInfo:
    series_id: str
    season_number: int
    title: str | None

    @property
    def label(self) -> str:
        return self.title or f"Season {self.season_number}"


@dataclass(frozen=True)
class EpisodeInfo:
    content_id: str
    series_id: str
    series_title: str
    series_description: str | None
    series_genre: list[str] | None
    season_number: int
    season_title: str | None
    episode_number: int
    title: str | None
    file_id: str
    channel_id: int
    stored_message_id: int | None
    stored_link: str | None
    upload_status: str
    upload_error: str | None

    @property
    def season_label(self) -> str:
        return self.season_title or f"Season {self.season_number}"


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


def _movie_info(movie: Movie) -> MovieInfo:
    return MovieInfo(
        content_id=movie.content_id,
        title=movie.title,
        year=movie.year,
        description=movie.description,
        genre=movie.genre,
        file_id=movie.file_id,
        channel_id=movie.channel_id,
        stored_message_id=movie.stored_message_id,
        upload_status=movie.upload_status,
        upload_error=movie.upload_error,
    )


def _series_info(series: Series) -> SeriesInfo:
    return SeriesInfo(
        series_id=series.series_id,
        title=series.title,
        type=series.type,
        year=series.year,
        description=series.description,
        genre=series.genre,
        channel_id=series.channel_id,
    )


def _episode_info(episode: Episode, season: Season, series: Series) -> EpisodeInfo:
    return EpisodeInfo(
        content_id=episode.content_id,
        series_id=series.series_id,
        series_title=series.title,
        series_description=series.description,
        series_genre=series.genre,
        season_number=season.season_number,
        season_title=season.title,
        episode_number=episode.episode_number,
        title=episode.title,
        file_id=episode.file_id,
        channel_id=series.channel_id,
        stored_message_id=episode.stored_message_id,
        stored_link=episode.stored_link,
        upload_status=episode.upload_status,
        upload_error=episode.upload_error,
    )


def _episode_query():
    return (
        select(Episode, Season, Series)
        .join(Season, Episode.season_pk == Season.id)
        .join(Series, Season.series_pk == Series.id)
    )


def _upload_model(kind: str) -> type[Movie] | type[Episode]:
    if kind == ContentKind.MOVIE.value:
        return Movie
    if kind == ContentKind.EPISODE.value:
        return Episode
    raise ValueError(f"kind {kind!r} has no upload state")


class ContentStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def find_kind(self, key: str) -> str | None:
        async with self._session_maker() as session:
            content_key = await session.get(ContentKey, key)
            return content_key.kind if content_key else None

    async def find_movie(self, content_id: str) -> MovieInfo | None:
        async with self._session_maker() as session:
            result = await session.execute(select(Movie).where(Movie.content_id == content_id))
            movie = result.scalar_one_or_none()
            return _movie_info(movie) if movie else None

    async def find_episode(self, content_id: str) -> EpisodeInfo | None:
        async with self._session_maker() as session:
            result = await session.execute(_episode_query().where(Episode.content_id == content_id))
            row = result.first()
            return _episode_info(*row) if row else None

    async def find_episode_at(
        self,
        series_id: str,
        season_number: int,
        episode_number: int,
    ) -> EpisodeInfo | None:
        async with self._session_maker() as session:
            result = await session.execute(
                _episode_query().where(
                    Series.series_id == series_id,
                    Season.season_number == season_number,
                    Episode.episode_number == episode_number,
                )
            )
            row = result.first()
            return _episode_info(*row) if row else None

    async def find_series(self, series_id: str) -> SeriesInfo | None:
        async with self._session_maker() as session:
            series = await self._get_series(session, series_id)
            if series is None:
                result = await session.execute(
                    select(Series)
                    .where(func.lower(Series.series_id) == series_id.lower())
                    .order_by(Series.id)
                )
                series = result.scalars().first()
            return _series_info(series) if series else None

    async def find_season(self, series_id: str, season_number: int) -> SeasonInfo | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Season)
                .join(Series, Season.series_pk == Series.id)
                .where(Series.series_id == series_id, Season.season_number == season_number)
            )
            season = result.scalar_one_or_none()
            if season is None:
                return None
            return SeasonInfo(series_id=series_id, season_number=season.season_number, title=season.title)

    async def list_seasons(self, series_id: str) -> list[SeasonInfo]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Season)
                .join(Series, Season.series_pk == Series.id)
                .where(Series.series_id == series_id)
                .order_by(Season.season_number)
            )
            return [
                SeasonInfo(series_id=series_id, season_number=season.season_number, title=season.title)
                for season in result.scalars()
            ]

    async def list_episodes(self, series_id: str, season_number: int) -> list[EpisodeInfo]:
        async with self._session_maker() as session:
            result = await session.execute(
                _episode_query()
                .where(Series.series_id == series_id, Season.season_number == season_number)
                .order_by(Episode.episode_number)
            )
            return [_episode_info(*row) for row in result.all()]

    async def add_movie(
        self,
        *,
        content_id: str,
        title: str,
        year: int | None,
        file_id: str,
        channel_id: int,
        description: str | None = None,
        genre: list[str] | None = None,
    ) -> MovieInfo:
        async with self._session_maker() as session:
            movie = Movie(
                content_id=content_id,
                title=title,
                year=year,
                description=description,
                genre=genre,
                file_id=file_id,
                channel_id=channel_id,
                upload_status=UploadStatus.PENDING.value,
            )
            session.add(movie)
            session.add(ContentKey(key=content_id, kind=ContentKind.MOVIE.value))
            await session.commit()
            return _movie_info(movie)

    async def add_series(
        self,
        *,
        series_id: str,
        title: str,
        type: str,
        year: int | None,
        channel_id: int,
        description: str | None = None,
        genre: list[str] | None = None,
    ) -> SeriesInfo:
        async with self._session_maker() as session:
            series = Series(
                series_id=series_id,
                title=title,
                type=type,
                year=year,
                description=description,
                genre=genre,
                channel_id=channel_id,
            )
            session.add(series)
            session.add(ContentKey(key=series_id, kind=ContentKind.SERIES.value))
            await session.commit()
            return _series_info(series)

    async def add_episode(
        self,
        *,
        series_id: str,
        season_number: int,
        episode_number: int,
        file_id: str,
        title: str | None = None,
        season_title: str | None = None,
    ) -> EpisodeInfo:
        async with self._session_maker() as session:
            series = await self._get_series(session, series_id)
            if series is None:
                raise NotFoundError(series_id, kind="series")
            result = await session.execute(
                select(Season).where(
                    Season.series_pk == series.id,
                    Season.season_number == season_number,
                )
            )
            season = result.scalar_one_or_none()
            if season is None:
                season = Season(series_pk=series.id, season_number=season_number, title=season_title)
                session.add(season)
                await session.flush()
            content_id = encode_episode_id(series.series_id, season_number, episode_number)
            episode = Episode(
                season_pk=season.id,
                episode_number=episode_number,
                title=title,
                content_id=content_id,
                file_id=file_id,
                upload_status=UploadStatus.PENDING.value,
            )
            session.add(episode)
            session.add(ContentKey(key=content_id, kind=ContentKind.EPISODE.value))
            await session.commit()
            return _episode_info(episode, season, series)

    async def mark_processing(self, kind: str, content_id: str) -> bool:
        model = _upload_model(kind)
        async with self._session_maker() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.content_id == content_id,
                    model.upload_status.in_(_CLAIMABLE_STATUSES),
                )
                .values(upload_status=UploadStatus.PROCESSING.value)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_completed(
        self,
        kind: str,
        content_id: str,
        message_id: int,
        link: str | None = None,
    ) -> None:
        model = _upload_model(kind)
        values: dict = {
            "upload_status": UploadStatus.COMPLETED.value,
            "upload_error": None,
            "stored_message_id": message_id,
        }
        if model is Episode:
            values["stored_link"] = link
        async with self._session_maker() as session:
            await session.execute(
                update(model)
                .where(
                    model.content_id == content_id,
                    model.upload_status == UploadStatus.PROCESSING.value,
                )
                .values(**values)
            )
            await session.commit()

    async def mark_failed(self, kind: str, content_id: str, error: str) -> None:
        model = _upload_model(kind)
        async with self._session_maker() as session:
            await session.execute(
                update(model)
                .where(
                    model.content_id == content_id,
                    model.upload_status == UploadStatus.PROCESSING.value,
                )
                .values(upload_status=UploadStatus.FAILED.value, upload_error=error)
            )
            await session.commit()

    async def requeue_interrupted(self) -> int:
        """Moves rows left in ``processing`` by a stopped or crashed worker back to ``pending``."""
        requeued = 0
        async with self._session_maker() as session:
            for model in (Movie, Episode):
                result = await session.execute(
                    update(model)
                    .where(model.upload_status == UploadStatus.PROCESSING.value)
                    .values(upload_status=UploadStatus.PENDING.value)
                )
                requeued += result.rowcount
            await session.commit()
        return requeued

    async def list_pending_ids(self) -> list[str]:
        async with self._session_maker() as session:
            pending: list[tuple[datetime, str]] = []
            for model in (Movie, Episode):
                result = await session.execute(
                    select(model.created_at, model.content_id).where(
                        model.upload_status == UploadStatus.PENDING.value
                    )
                )
                pending.extend(tuple(row) for row in result.all())
        pending.sort(key=lambda row: row[0])
        return [content_id for _, content_id in pending]

    async def cancel_stale_pending(self, cutoff: datetime, now: datetime | None = None) -> int:
        cancelled_at = now or datetime.now(timezone.utc)
        cancelled = 0
        async with self._session_maker() as session:
            for model in (Movie, Episode):
                result = await session.execute(
                    update(model)
                    .where(
                        model.upload_status == UploadStatus.PENDING.value,
                        model.created_at < cutoff,
                    )
                    .values(upload_status=UploadStatus.CANCELLED.value, updated_at=cancelled_at)
                )
                cancelled += result.rowcount
            await session.commit()
        return cancelled

    async def delete_cancelled(self, cutoff: datetime) -> int:
        deleted = 0
        async with self._session_maker() as session:
            for model in (Movie, Episode):
                stale = (
                    select(model.content_id)
                    .where(
                        model.upload_status == UploadStatus.CANCELLED.value,
                        model.updated_at < cutoff,
                    )
                )
                await session.execute(delete(ContentKey).where(ContentKey.key.in_(stale)))
                result = await session.execute(
                    delete(model).where(
                        model.upload_status == UploadStatus.CANCELLED.value,
                        model.updated_at < cutoff,
                    )
                )
                deleted += result.rowcount
            await session.commit()
        return deleted

    async def record_delivery(
        self,
        *,
        chat_id: int,
        status: str,
        tg_user_id: int | None = None,
        content_id: str | None = None,
        kind: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session_maker() as session:
            session.add(
                DeliveryRecord(
                    tg_user_id=tg_user_id,
                    chat_id=chat_id,
                    content_id=content_id,
                    kind=kind,
                    status=status,
                    error=error,
                )
            )
            await session.commit()

    async def delivery_stats(self, since: datetime) -> DeliveryStats:
        async with self._session_maker() as session:
            result = await session.execute(
                select(
                    func.count(distinct(DeliveryRecord.tg_user_id)),
                    func.count(DeliveryRecord.id),
                    func.count(DeliveryRecord.id).filter(DeliveryRecord.status == "delivered"),
                    func.count(DeliveryRecord.id).filter(DeliveryRecord.status == "failed"),
                    func.count(DeliveryRecord.id).filter(DeliveryRecord.created_at >= since),
                )
            )
            unique_users, total, delivered, failed, since_count = result.one()
        return DeliveryStats(
            unique_users=unique_users,
            total=total,
            delivered=delivered,
            failed=failed,
            since_count=since_count,
        )

    @staticmethod
    async def _get_series(session: AsyncSession, series_id: str) -> Series | None:
        result = await session.execute(select(Series).where(Series.series_id == series_id))
        return result.scalar_one_or_none()
