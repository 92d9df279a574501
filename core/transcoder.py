"""
Reply Transcoder — split a backend reply into deliverable message parts.

Markdown links and images, ``[caption](url)`` or ``![caption](url)``, become
media parts; the prose around them becomes text parts. Order is preserved
and blank text segments are dropped.
"""
from __future__ import annotations

import re

from models.schemas import MediaPart, MessagePart, TextPart

MEDIA_REFERENCE = re.compile(r"!?\[(.*?)\]\((.*?)\)")


def transcode_reply(reply: str) -> list[MessagePart]:
    parts: list[MessagePart] = []
    if not reply:
        return parts

    last_index = 0
    for match in MEDIA_REFERENCE.finditer(reply):
        preceding = reply[last_index:match.start()].strip()
        if preceding:
            parts.append(TextPart(text=preceding))
        parts.append(MediaPart(caption=match.group(1), media_url=match.group(2)))
        last_index = match.end()

    trailing = reply[last_index:].strip()
    if trailing:
        parts.append(TextPart(text=trailing))
    return parts
