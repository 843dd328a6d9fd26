"""Error taxonomy for tutorchat.

``ConfigError`` and ``HttpError`` block an action before the transcript
is touched.  ``TransportError`` raised mid-stream is recovered by the
orchestrator, which closes the open turn with a diagnostic note.
``FrameParseError`` never leaves the delta extractor.
"""


class TutorChatError(Exception):
    """Base class for all tutorchat errors."""


class ConfigError(TutorChatError):
    """Required credential or client configuration is missing."""


class HttpError(TutorChatError):
    """Non-success status from the gateway or the upstream API."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body}" if body else f"HTTP {status}")


class TransportError(TutorChatError):
    """The connection dropped or a read failed."""


class FrameParseError(TutorChatError):
    """A frame payload could not be read as a response chunk."""


class ResponseFormatError(TutorChatError):
    """A whole reply did not carry the expected text or JSON."""


class NoOpenTurnError(RuntimeError):
    """A delta was appended while no turn was open."""


class TurnInProgressError(RuntimeError):
    """A turn was opened or a message appended while a turn is open."""


class RequestInFlightError(TutorChatError):
    """A new request was sent while a previous one is still running."""


class RequestCancelledError(TutorChatError):
    """The request was cancelled through its token."""
