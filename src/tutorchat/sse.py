"""Server-Sent Events encoding for ``generateContent`` chunks."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable

from tutorchat.frames import DATA_PREFIX, DONE_SENTINEL


def text_chunk(text: str) -> dict:
    """Build the smallest ``generateContent`` chunk carrying *text*."""
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def format_data_line(payload: dict | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"{DATA_PREFIX}{data}\n\n"


async def sse_generator(
    chunks: Iterable[dict | str], done: bool = True,
) -> AsyncIterator[bytes]:
    """Encode chunks as an SSE body, ending with the ``[DONE]`` frame."""
    for chunk in chunks:
        yield format_data_line(chunk).encode("utf-8")
    if done:
        yield format_data_line(DONE_SENTINEL).encode("utf-8")
