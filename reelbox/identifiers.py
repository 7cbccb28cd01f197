import re
import time
from dataclasses import dataclass

from reelbox.errors import MalformedIdentifier

KIND_PREFIXES = {
    "movie": "mo",
    "webseries": "ws",
    "anime": "an",
}
SERIES_KINDS = ("webseries", "anime")
SLUG_MAX_LENGTH = 15

SEASON_TOKEN_PREFIX = "season_"
EPISODE_TOKEN_PREFIX = "episode_"

EPISODE_ID_PATTERN = re.compile(
    r"(?P<series_id>.+)_s(?P<season>[0-9]{2,})e(?P<episode>[0-9]{2,})"
)
SLUG_STRIP_PATTERN = re.compile(r"[^a-zA-Z0-9_]")
WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass(frozen=True)
class EpisodeKey:
    series_id: str
    season_number: int
    episode_number: int


@dataclass(frozen=True)
class SeasonSelection:
    series_id: str
    season_number: int


def slugify_title(title: str) -> str:
    slug = WHITESPACE_PATTERN.sub("_", title)
    slug = SLUG_STRIP_PATTERN.sub("", slug)
    return slug.lower()[:SLUG_MAX_LENGTH]


def timestamp_suffix(now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"{now_ms % 100_000:05d}"


def encode_content_id(kind: str, title: str, year: int, now_ms: int | None = None) -> str:
    prefix = KIND_PREFIXES.get(kind)
    if prefix is None:
        raise ValueError(f"unknown content kind: {kind}")
    return f"{prefix}_{slugify_title(title)}_{year}_{timestamp_suffix(now_ms)}"


def encode_series_id(kind: str, title: str, year: int, now_ms: int | None = None) -> str:
    if kind not in SERIES_KINDS:
        raise ValueError(f"not a series kind: {kind}")
    return encode_content_id(kind, title, year, now_ms)


def encode_episode_id(series_id: str, season_number: int, episode_number: int) -> str:
    return f"{series_id}_s{season_number:02d}e{episode_number:02d}"


def looks_like_episode_id(identifier: str) -> bool:
    return EPISODE_ID_PATTERN.fullmatch(identifier) is not None


def parse_episode_id(identifier: str) -> EpisodeKey:
    # Only the trailing marker group counts; markers inside the series id are kept intact.
    match = EPISODE_ID_PATTERN.fullmatch(identifier)
    if not match:
        raise MalformedIdentifier(identifier, "missing trailing _sNNeNN marker")
    return EpisodeKey(
        series_id=match.group("series_id"),
        season_number=int(match.group("season")),
        episode_number=int(match.group("episode")),
    )


def season_token(series_id: str, season_number: int) -> str:
    return f"{SEASON_TOKEN_PREFIX}{series_id}_{season_number}"


def parse_season_token(token: str) -> SeasonSelection:
    if not token.startswith(SEASON_TOKEN_PREFIX):
        raise MalformedIdentifier(token, "not a season token")
    body = token[len(SEASON_TOKEN_PREFIX):]
    series_id, sep, number = body.rpartition("_")
    if not sep or not series_id or not (number.isascii() and number.isdigit()):
        raise MalformedIdentifier(token, "expected season_<series_id>_<number>")
    return SeasonSelection(series_id=series_id, season_number=int(number))


def episode_token(content_id: str) -> str:
    return f"{EPISODE_TOKEN_PREFIX}{content_id}"


def parse_episode_token(token: str) -> str:
    if not token.startswith(EPISODE_TOKEN_PREFIX):
        raise MalformedIdentifier(token, "not an episode token")
    content_id = token[len(EPISODE_TOKEN_PREFIX):]
    if not content_id:
        raise MalformedIdentifier(token, "empty episode content id")
    return content_id


def channel_message_link(channel_id: int | str, message_id: int) -> str:
    internal_id = str(channel_id)
    if internal_id.startswith("-100"):
        internal_id = internal_id[len("-100"):]
    return f"https://t.me/c/{internal_id}/{message_id}"


def deep_link(bot_username: str, identifier: str) -> str:
    return f"https://t.me/{bot_username.lstrip('@')}?start={identifier}"
