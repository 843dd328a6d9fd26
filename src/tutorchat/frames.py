"""Line framing for ``text/event-stream`` bodies.

The :class:`FrameDecoder` turns byte fragments of arbitrary size into
complete ``data:`` frames.  Fragment boundaries carry no meaning: the
same bytes split any other way produce the same frames.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """One ``data:`` line with the prefix removed."""

    payload: str

    @property
    def is_terminator(self) -> bool:
        return self.payload == DONE_SENTINEL


@dataclass
class FrameStats:
    lines: int = 0
    frames: int = 0
    dropped: int = 0
    discarded_chars: int = 0


class FrameDecoder:
    """Splits a fragment stream into frames, buffering the partial tail."""

    def __init__(self, prefix: str = DATA_PREFIX) -> None:
        self.prefix = prefix
        self.stats = FrameStats()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, fragment: bytes | str) -> list[Frame]:
        if isinstance(fragment, bytes):
            fragment = self._decoder.decode(fragment)
        self._buffer += fragment
        *lines, self._buffer = self._buffer.split("\n")
        frames = []
        for line in lines:
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def finish(self) -> int:
        """End the stream and drop any unterminated tail.

        Returns the number of characters discarded.
        """
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        if tail.strip():
            logger.debug(f"Discarding unterminated line of {len(tail)} chars")
            self.stats.discarded_chars += len(tail)
            return len(tail)
        return 0

    async def frames(
        self, fragments: AsyncIterable[bytes | str],
    ) -> AsyncIterator[Frame]:
        """Pull fragments and yield frames as soon as they complete."""
        async for fragment in fragments:
            for frame in self.feed(fragment):
                yield frame
        self.finish()

    def _parse_line(self, line: str) -> Frame | None:
        self.stats.lines += 1
        stripped = line.strip()
        if not stripped.startswith(self.prefix):
            if stripped:
                self.stats.dropped += 1
                logger.debug(f"Dropping non-data line: {stripped[:80]!r}")
            return None
        self.stats.frames += 1
        return Frame(payload=stripped[len(self.prefix):])
