"""Registration of content posted into the ingest chat.

Operators post a file with a caption such as::

    reelbox: type=movie; title=Inception; year=2010; genre=Sci-Fi, Thriller
    reelbox: series=ws_dark_2017_48213; season=1; episode=2; title=Lies

or a plain text message registering a series container::

    reelbox: type=webseries; title=Dark; year=2017
"""

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from reelbox.db import ContentStore
from reelbox.errors import NotFoundError
from reelbox.identifiers import SERIES_KINDS, encode_content_id, encode_series_id
from reelbox.settings import Settings
from reelbox.workers.upload_queue import UploadQueue

logger = logging.getLogger("reelbox.ingest")

CAPTION_PATTERN = re.compile(r"^reelbox\s*:\s*(.+)$", re.IGNORECASE | re.DOTALL)
ALLOWED_KEYS = {
    "type",
    "title",
    "year",
    "description",
    "genre",
    "series",
    "season",
    "episode",
    "season_title",
}
INT_KEYS = {"year", "season", "episode"}


class IngestError(ValueError):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class IngestRequest:
    kind: str
    title: str | None = None
    year: int | None = None
    description: str | None = None
    genre: list[str] | None = None
    series_id: str | None = None
    season_number: int | None = None
    episode_number: int | None = None
    season_title: str | None = None


@dataclass(frozen=True)
class IngestResult:
    identifier: str
    kind: str
    queued: bool


def parse_ingest_caption(caption: str) -> IngestRequest | None:
    if not caption:
        return None
    match = CAPTION_PATTERN.match(caption.strip())
    if not match:
        return None
    data: dict[str, str | int] = {}
    for part in re.split(r"\s*[;\n]\s*", match.group(1)):
        if not part:
            continue
        key_value = re.split(r"\s*=\s*", part, maxsplit=1)
        if len(key_value) != 2:
            return None
        key = key_value[0].strip().lower()
        value = key_value[1].strip()
        if key not in ALLOWED_KEYS or not value:
            return None
        if key in INT_KEYS:
            try:
                data[key] = int(value)
            except ValueError:
                return None
        else:
            data[key] = value
    return _build_request(data)


def _build_request(data: dict) -> IngestRequest | None:
    genre = None
    if "genre" in data:
        genre = [item.strip() for item in str(data["genre"]).split(",") if item.strip()]
    if "series" in data:
        if "season" not in data or "episode" not in data:
            return None
        if data["season"] < 1 or data["episode"] < 1:
            return None
        return IngestRequest(
            kind="episode",
            title=data.get("title"),
            series_id=data["series"],
            season_number=data["season"],
            episode_number=data["episode"],
            season_title=data.get("season_title"),
        )
    kind = str(data.get("type", "")).lower()
    if kind not in {"movie", *SERIES_KINDS}:
        return None
    if "title" not in data or "year" not in data:
        return None
    return IngestRequest(
        kind=kind,
        title=data["title"],
        year=data["year"],
        description=data.get("description"),
        genre=genre,
    )


class IngestService:
    def __init__(self, store: ContentStore, queue: UploadQueue, settings: Settings) -> None:
        self._store = store
        self._queue = queue
        self._settings = settings

    async def register(self, request: IngestRequest, file_id: str | None) -> IngestResult:
        if request.kind in SERIES_KINDS:
            return await self._register_series(request)
        if not file_id:
            raise IngestError("file_required")
        if request.kind == "movie":
            identifier = await self._register_movie(request, file_id)
        else:
            identifier = await self._register_episode(request, file_id)
        queued = await self._queue.enqueue(identifier)
        return IngestResult(identifier=identifier, kind=request.kind, queued=queued)

    async def _register_movie(self, request: IngestRequest, file_id: str) -> str:
        content_id = encode_content_id("movie", request.title, request.year)
        try:
            await self._store.add_movie(
                content_id=content_id,
                title=request.title,
                year=request.year,
                file_id=file_id,
                channel_id=self._settings.channel_for("movie"),
                description=request.description,
                genre=request.genre,
            )
        except IntegrityError as exc:
            raise IngestError("duplicate_id") from exc
        logger.info("movie registered", extra={"action": "ingest_movie", "content_id": content_id})
        return content_id

    async def _register_episode(self, request: IngestRequest, file_id: str) -> str:
        try:
            episode = await self._store.add_episode(
                series_id=request.series_id,
                season_number=request.season_number,
                episode_number=request.episode_number,
                file_id=file_id,
                title=request.title,
                season_title=request.season_title,
            )
        except NotFoundError as exc:
            raise IngestError("series_not_found") from exc
        except IntegrityError as exc:
            raise IngestError("duplicate_episode") from exc
        logger.info(
            "episode registered",
            extra={"action": "ingest_episode", "content_id": episode.content_id},
        )
        return episode.content_id

    async def _register_series(self, request: IngestRequest) -> IngestResult:
        series_id = encode_series_id(request.kind, request.title, request.year)
        try:
            await self._store.add_series(
                series_id=series_id,
                title=request.title,
                type=request.kind,
                year=request.year,
                channel_id=self._settings.channel_for(request.kind),
                description=request.description,
                genre=request.genre,
            )
        except IntegrityError as exc:
            raise IngestError("duplicate_id") from exc
        logger.info("series registered", extra={"action": "ingest_series", "content_id": series_id})
        return IngestResult(identifier=series_id, kind=request.kind, queued=False)
