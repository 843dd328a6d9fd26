"""Events emitted while a request runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class StreamEvent:
    """Base for all request events."""


@dataclass
class TurnOpenedEvent(StreamEvent):
    """An empty assistant message was appended and is open."""

    role: str = "assistant"


@dataclass
class DeltaEvent(StreamEvent):
    """A text delta was applied to the open message."""

    text: str = ""


@dataclass
class TurnClosedEvent(StreamEvent):
    """The open message became immutable; ``text`` is its final value."""

    text: str = ""


@dataclass
class SendCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    outcome: Any = None
