"""Plain-text cleanup applied to every free-text field before it is stored.

No HTML or markup handling happens here; rendering code is responsible for
escaping ``content`` before showing it as rich text.
"""

from __future__ import annotations

import re
import unicodedata
from typing import NamedTuple

from .config import MAX_CONTENT_CHARS, TRUNCATION_MARKER

# Every C0/C1 control character except tab (0x09) and newline (0x0A).
_DISALLOWED = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_LINE_ENDINGS = re.compile(r"\r\n?")
# Lone UTF-16 halves (a JSON "\ud83d" escape that split an emoji) have no UTF-8 form.
_SURROGATES = re.compile(r"[\ud800-\udfff]")


class SanitizedText(NamedTuple):
    text: str
    dropped: int


def sanitize(text: str, max_length: int = MAX_CONTENT_CHARS) -> SanitizedText:
    """Strip disallowed control characters and lone surrogates, and cap the length.

    Carriage returns are folded into newlines rather than counted as dropped.
    Text longer than ``max_length`` is cut so that the result, including the
    truncation marker, is at most ``max_length`` characters.
    """
    if not text:
        return SanitizedText("", 0)

    cleaned = _LINE_ENDINGS.sub("\n", text)
    cleaned, dropped = _DISALLOWED.subn("", cleaned)
    cleaned, halves = _SURROGATES.subn("", cleaned)
    dropped += halves
    cleaned = unicodedata.normalize("NFC", cleaned)

    if len(cleaned) > max_length:
        keep = max(0, max_length - len(TRUNCATION_MARKER))
        cleaned = (cleaned[:keep] + TRUNCATION_MARKER)[:max_length]

    return SanitizedText(cleaned, dropped)
