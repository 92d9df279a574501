"""Tests for the reply transcoder."""
import pytest

from core.transcoder import transcode_reply
from models.schemas import MediaPart, TextPart


class TestPlainReplies:
    @pytest.mark.parametrize("reply", [
        "Hello there",
        "  padded answer \n",
        "line one\nline two",
        "brackets [alone] and (parens) are not links",
    ])
    def test_single_text_part(self, reply):
        parts = transcode_reply(reply)
        assert parts == [TextPart(text=reply.strip())]

    @pytest.mark.parametrize("reply", ["", "   ", "\n\t"])
    def test_blank_reply_yields_nothing(self, reply):
        assert transcode_reply(reply) == []

    def test_none_yields_nothing(self):
        assert transcode_reply(None) == []


class TestMediaReferences:
    def test_link_between_text(self):
        parts = transcode_reply("see [cap](http://x/img.png?q=1) more")
        assert parts == [
            TextPart(text="see"),
            MediaPart(caption="cap", media_url="http://x/img.png?q=1"),
            TextPart(text="more"),
        ]

    def test_image_prefix_is_same_as_link(self):
        assert transcode_reply("![cat](https://c.at/1.jpg)") == \
            transcode_reply("[cat](https://c.at/1.jpg)")

    def test_image_prefix_not_left_in_text(self):
        parts = transcode_reply("Look: ![cat](https://c.at/1.jpg)")
        assert parts == [
            TextPart(text="Look:"),
            MediaPart(caption="cat", media_url="https://c.at/1.jpg"),
        ]

    def test_adjacent_references_have_no_empty_text(self):
        parts = transcode_reply("[a](http://h/1.png)  \n [b](http://h/2.png)")
        assert [p.kind for p in parts] == ["media", "media"]
        assert [p.media_url for p in parts] == ["http://h/1.png", "http://h/2.png"]

    def test_empty_caption(self):
        parts = transcode_reply("[](http://h/1.png)")
        assert parts == [MediaPart(caption="", media_url="http://h/1.png")]

    def test_order_preserved(self):
        reply = "Intro.\n![one](http://h/1.png)\nMiddle text.\n[two](http://h/2.png)\nBye."
        parts = transcode_reply(reply)
        assert [p.kind for p in parts] == ["text", "media", "text", "media", "text"]
        assert parts[0].text == "Intro."
        assert parts[2].text == "Middle text."
        assert parts[4].text == "Bye."

    def test_parts_cover_the_reply(self):
        reply = "A [x](http://h/x.png) B ![y](http://h/y.png) C"
        parts = transcode_reply(reply)
        rebuilt = " ".join(
            p.text if isinstance(p, TextPart) else p.media_url for p in parts
        )
        for fragment in ("A", "http://h/x.png", "B", "http://h/y.png", "C"):
            assert fragment in rebuilt
        # each piece appears in the source in the same order
        cursor = 0
        for p in parts:
            needle = p.text if isinstance(p, TextPart) else p.media_url
            found = reply.find(needle, cursor)
            assert found >= cursor
            cursor = found + len(needle)
