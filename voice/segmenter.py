"""
Sentence Segmenter — splits a streaming token sequence into speakable units.

Units end at sentence-final punctuation (Chinese or Latin), a newline, or a
comma followed by whitespace. A unit must carry more than ``min_chars``
characters of text; a shorter run is merged with whatever follows it rather
than dropped, so no generated text is ever lost.
"""
from __future__ import annotations

import re
from typing import Optional

BOUNDARY_PATTERN = re.compile(r"[。！？.!?]+|\n|[，,]\s")


class SentenceSegmenter:
    """Incremental segmenter. Feed tokens, collect complete units, flush the rest."""

    def __init__(self, min_chars: int = 3):
        self.min_chars = min_chars
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, token: str) -> list[str]:
        """Append a token and return every unit completed by it, in order."""
        if not token:
            return []
        self._buffer += token

        units: list[str] = []
        start = 0
        for match in BOUNDARY_PATTERN.finditer(self._buffer):
            candidate = self._buffer[start:match.end()].strip()
            if len(candidate) > self.min_chars:
                units.append(candidate)
                start = match.end()
        self._buffer = self._buffer[start:]
        return units

    def flush(self) -> Optional[str]:
        """Return whatever is left (any length, if non-blank) and clear the buffer."""
        remainder = self._buffer.strip()
        self._buffer = ""
        return remainder or None

    def reset(self) -> None:
        self._buffer = ""


def split_sentences(text: str, min_chars: int = 3) -> list[str]:
    """Segment a complete text in one call."""
    segmenter = SentenceSegmenter(min_chars=min_chars)
    units = segmenter.feed(text)
    tail = segmenter.flush()
    if tail:
        units.append(tail)
    return units
