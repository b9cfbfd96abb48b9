"""Page text normalisation ahead of DOCX layout."""

from __future__ import annotations

import re
import unicodedata

MAX_EFFECTIVE_LINES = 40
LINE_WRAP_THRESHOLD = 80

_LINE_ENDINGS = re.compile(r"\r\n?")
_REPEATED_WHITESPACE = re.compile(r"(\s)\1+")


def _effective_line_count(lines: list[str]) -> int:
    # a line past the wrap threshold renders as roughly two lines
    return len(lines) + sum(1 for line in lines if len(line) > LINE_WRAP_THRESHOLD)


def compact_text(text: str) -> str:
    """Merge the shortest adjacent line pairs until the page fits in 40 effective lines.

    Ties go to the earliest pair. Every merge removes one line, so the loop
    always terminates, and running it on its own output changes nothing.
    """
    lines = text.split("\n")
    while len(lines) >= 2 and _effective_line_count(lines) > MAX_EFFECTIVE_LINES:
        min_index = 0
        min_combined = None
        for index in range(len(lines) - 1):
            combined = len(lines[index]) + len(lines[index + 1])
            if min_combined is None or combined < min_combined:
                min_combined = combined
                min_index = index
        lines[min_index] = f"{lines[min_index]} {lines[min_index + 1]}"
        del lines[min_index + 1]
    return "\n".join(lines)


def normalize_page_text(text: str) -> str:
    text = _LINE_ENDINGS.sub("\n", text)
    text = _REPEATED_WHITESPACE.sub(r"\1", text)
    return text.strip()


def _is_arabic_char(ch: str) -> bool:
    return "\u0600" <= ch <= "\u06ff"


def _is_neutral_char(ch: str) -> bool:
    return ch.isspace() or "0" <= ch <= "9" or unicodedata.category(ch).startswith("P")


def is_arabic_text(text: str) -> bool:
    """True when Arabic-block characters are at least as many as other letters/symbols.

    Whitespace, ASCII digits and punctuation are not counted. Text with no
    countable characters at all is reported as Arabic.
    """
    arabic = 0
    other = 0
    for ch in text:
        if _is_arabic_char(ch):
            arabic += 1
        elif not _is_neutral_char(ch):
            other += 1
    return arabic >= other


__all__ = [
    "compact_text",
    "normalize_page_text",
    "is_arabic_text",
    "MAX_EFFECTIVE_LINES",
    "LINE_WRAP_THRESHOLD",
]
