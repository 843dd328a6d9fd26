"""Text delta extraction from ``generateContent`` payloads.

A frame that cannot be read contributes nothing; it never ends the
stream.  Every such frame is counted in :class:`ExtractorStats`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from tutorchat.errors import FrameParseError
from tutorchat.frames import Frame

logger = logging.getLogger(__name__)


class Part(BaseModel):
    text: str | None = None


class Content(BaseModel):
    parts: list[Part] = []
    role: str | None = None


class Candidate(BaseModel):
    content: Content | None = None
    finishReason: str | None = None


class GenerateContentChunk(BaseModel):
    """The slice of a ``generateContent`` reply that carries text.

    Streamed frames and whole replies share this shape.
    """

    candidates: list[Candidate] = []

    def first_text(self) -> str | None:
        if not self.candidates:
            return None
        content = self.candidates[0].content
        if content is None or not content.parts:
            return None
        return content.parts[0].text


@dataclass
class ExtractorStats:
    frames: int = 0
    deltas: int = 0
    malformed: int = 0
    empty: int = 0
    terminators: int = 0


class DeltaExtractor:
    def __init__(self) -> None:
        self.stats = ExtractorStats()

    def extract(self, frame: Frame) -> str | None:
        """Return the frame's text delta, or ``None`` if it has none."""
        self.stats.frames += 1
        if frame.is_terminator:
            self.stats.terminators += 1
            return None
        try:
            chunk = self._parse(frame.payload)
        except FrameParseError as e:
            self.stats.malformed += 1
            logger.debug(f"Skipping malformed frame: {e}")
            return None
        text = chunk.first_text()
        if not text:
            self.stats.empty += 1
            return None
        self.stats.deltas += 1
        return text

    async def deltas(self, frames: AsyncIterable[Frame]) -> AsyncIterator[str]:
        """Yield deltas from *frames* until the terminator frame."""
        async for frame in frames:
            if frame.is_terminator:
                self.extract(frame)
                return
            text = self.extract(frame)
            if text is not None:
                yield text

    @staticmethod
    def _parse(payload: str) -> GenerateContentChunk:
        try:
            return GenerateContentChunk.model_validate_json(payload)
        except ValidationError as e:
            raise FrameParseError(
                f"{e.error_count()} validation error(s) in {payload[:80]!r}"
            ) from e


def extract_reply_text(document: dict) -> str | None:
    """Pull the single text out of a whole ``generateContent`` reply."""
    try:
        chunk = GenerateContentChunk.model_validate(document)
    except ValidationError:
        return None
    return chunk.first_text() or None
