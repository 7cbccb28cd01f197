import re
import unittest
from html import unescape

from reelbox.db import EpisodeInfo, MovieInfo
from reelbox.services.captions import (
    CAPTION_LIMIT,
    build_episode_caption,
    build_movie_caption,
    truncate_caption,
)

BROKEN_ENTITY = re.compile(r"&(?!(?:amp|lt|gt|quot|#x27);)")


def _visible(caption: str) -> str:
    return unescape(re.sub(r"<[^>]+>", "", caption))


def _movie(title: str = "Inception", description: str | None = None) -> MovieInfo:
    return MovieInfo(
        content_id="mo_inception_2010_12345",
        title=title,
        year=2010,
        description=description,
        genre=["Sci-Fi"],
        file_id="file",
        channel_id=-1001000000001,
        stored_message_id=None,
        upload_status="pending",
        upload_error=None,
    )


class TruncateCaptionTests(unittest.TestCase):
    def test_short_caption_is_unchanged(self) -> None:
        caption = "<b>Q&amp;A</b> (2010)"
        self.assertEqual(truncate_caption(caption), caption)

    def test_entities_count_as_one_character(self) -> None:
        self.assertEqual(truncate_caption("a&amp;b&lt;c", limit=3), "a&amp;b")

    def test_open_tags_are_closed(self) -> None:
        self.assertEqual(truncate_caption("<b>abcdef</b> tail", limit=3), "<b>abc</b>")

    def test_no_empty_tag_after_the_cut(self) -> None:
        self.assertEqual(truncate_caption("abc<b>def</b>", limit=3), "abc")


class BuildCaptionTests(unittest.TestCase):
    def test_long_description_with_ampersands(self) -> None:
        for padding in range(1, 6):
            with self.subTest(padding=padding):
                caption = build_movie_caption(_movie(description="x" * padding + "Q&A " * 300))
                self.assertIsNone(BROKEN_ENTITY.search(caption))
                self.assertTrue(caption.startswith("<b>Inception</b>"))
                self.assertLessEqual(len(_visible(caption)), CAPTION_LIMIT)

    def test_long_title_keeps_bold_closed(self) -> None:
        caption = build_movie_caption(_movie(title="T&" * 550))
        self.assertTrue(caption.endswith("</b>"))
        self.assertEqual(caption.count("<b>"), caption.count("</b>"))
        self.assertEqual(len(_visible(caption)), CAPTION_LIMIT)

    def test_episode_caption(self) -> None:
        episode = EpisodeInfo(
            content_id="demo123_s01e02",
            series_id="demo123",
            series_title="Demo <Show>",
            series_description=None,
            series_genre=None,
            season_number=1,
            season_title=None,
            episode_number=2,
            title="Lies",
            file_id="file",
            channel_id=-1001000000002,
            stored_message_id=None,
            stored_link=None,
            upload_status="pending",
            upload_error=None,
        )
        caption = build_episode_caption(episode)
        self.assertTrue(caption.startswith("<b>Demo &lt;Show&gt;</b> - Season 1 - Episode 2: Lies"))
        self.assertIn("Content ID: demo123_s01e02", caption)


if __name__ == "__main__":
    unittest.main()
