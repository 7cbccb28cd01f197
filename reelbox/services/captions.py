import re
from html import escape

from reelbox.db import EpisodeInfo, MovieInfo

CAPTION_LIMIT = 1024

_HTML_TOKEN = re.compile(
    r"<(?P<closing>/?)(?P<tag>[a-zA-Z]+)[^>]*>|&#?[a-zA-Z0-9]+;|[^<&]+|[<&]"
)


def truncate_caption(caption: str, limit: int = CAPTION_LIMIT) -> str:
    """Cut an HTML caption to ``limit`` visible characters.

    Telegram counts the limit after entity parsing, so tags cost nothing and an
    entity such as ``&amp;`` counts as one character. The cut never lands inside
    a tag or an entity, and tags still open at the cut are closed.
    """
    remaining = limit
    parts: list[str] = []
    open_tags: list[str] = []
    for match in _HTML_TOKEN.finditer(caption):
        token = match.group(0)
        tag = match.group("tag")
        if tag is not None:
            if match.group("closing"):
                if open_tags and open_tags[-1] == tag.lower():
                    open_tags.pop()
            elif remaining <= 0:
                break
            else:
                open_tags.append(tag.lower())
            parts.append(token)
            continue
        if remaining <= 0:
            break
        if len(token) > 1 and token.startswith("&"):
            parts.append(token)
            remaining -= 1
        else:
            parts.append(token[:remaining])
            remaining -= min(len(token), remaining)
    parts.extend(f"</{tag}>" for tag in reversed(open_tags))
    return "".join(parts)


def build_movie_caption(movie: MovieInfo) -> str:
    header = f"<b>{escape(movie.title)}</b>"
    if movie.year:
        header += f" ({movie.year})"
    lines = [header]
    if movie.description:
        lines.extend(["", escape(movie.description)])
    if movie.genre:
        lines.extend(["", f"Genre: {escape(', '.join(movie.genre))}"])
    lines.extend(["", f"Content ID: {movie.content_id}"])
    return truncate_caption("\n".join(lines))


def build_episode_caption(episode: EpisodeInfo) -> str:
    header = (
        f"<b>{escape(episode.series_title)}</b> - {escape(episode.season_label)}"
        f" - Episode {episode.episode_number}"
    )
    if episode.title:
        header += f": {escape(episode.title)}"
    lines = [header]
    if episode.series_description:
        lines.extend(["", escape(episode.series_description)])
    if episode.series_genre:
        lines.extend(["", f"Genre: {escape(', '.join(episode.series_genre))}"])
    lines.extend(
        [
            "",
            f"Content ID: {episode.content_id}",
            f"Season: {episode.season_number}",
            f"Episode: {episode.episode_number}",
        ]
    )
    return truncate_caption("\n".join(lines))


def build_episode_label(episode: EpisodeInfo) -> str:
    label = f"Episode {episode.episode_number}"
    if episode.title:
        label += f": {episode.title}"
    return label
