import json

import httpx
import pytest

from tutorchat.config import ClientConfig
from tutorchat.orchestrator import RequestOrchestrator
from tutorchat.sse import format_data_line, text_chunk
from tutorchat.transcript import TranscriptStore

GATEWAY_URL = "http://gateway.test/api/gemini"


# ---------------------------------------------------------------------------
# Stream body builders
# ---------------------------------------------------------------------------

def data_line(text: str) -> str:
    """One compact ``data:`` line carrying *text*, newline-terminated."""
    return f"data: {json.dumps(text_chunk(text), separators=(',', ':'))}\n"


def sse_body(*texts: str, done: bool = True) -> bytes:
    """An SSE body as the upstream sends it, one event per text."""
    body = "".join(format_data_line(text_chunk(t)) for t in texts)
    if done:
        body += format_data_line("[DONE]")
    return body.encode("utf-8")


def reply_document(text: str) -> dict:
    """A whole ``generateContent`` reply carrying *text*."""
    doc = text_chunk(text)
    doc["candidates"][0]["finishReason"] = "STOP"
    return doc


async def chunked(*pieces: bytes, error: Exception | None = None):
    """Yield *pieces* as separate network reads, then optionally fail."""
    for piece in pieces:
        yield piece
    if error is not None:
        raise error


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------

class FakeGateway:
    """Returns pre-queued responses. No network calls."""

    def __init__(self):
        self.responses: list = []
        self.requests: list[dict] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def queue_stream(self, body, status: int = 200) -> None:
        self.responses.append(httpx.Response(
            status,
            headers={"Content-Type": "text/event-stream"},
            content=body,
        ))

    def queue_json(self, document, status: int = 200) -> None:
        self.responses.append(httpx.Response(status, json=document))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def config():
    return ClientConfig(gateway_url=GATEWAY_URL, system_instruction="Be brief.")


@pytest.fixture
def store():
    return TranscriptStore()


@pytest.fixture
def orchestrator(config, store, gateway):
    return RequestOrchestrator(config, store, client=gateway.client())
