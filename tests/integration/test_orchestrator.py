"""Tests for RequestOrchestrator against a fake gateway."""

import asyncio
import json
from contextlib import aclosing
from unittest.mock import MagicMock

import httpx
import pytest

import tutorchat.instrumentation as inst
import tutorchat.orchestrator as orchestrator_module
from tutorchat.cancellation import CancellationToken
from tutorchat.errors import (
    ConfigError,
    HttpError,
    RequestInFlightError,
    ResponseFormatError,
    TransportError,
)
from tutorchat.events import (
    DeltaEvent,
    SendCompleteEvent,
    TurnClosedEvent,
    TurnOpenedEvent,
)
from tutorchat.frames import FrameDecoder
from tutorchat.message import Message, MessageRole
from tutorchat.modes import InteractionMode
from tutorchat.orchestrator import FAILURE_NOTICE, RequestOrchestrator, RequestState

from tests.conftest import chunked, data_line, reply_document, sse_body


async def blocking(*pieces: bytes, reached: asyncio.Event | None = None):
    """Yield *pieces*, then wait forever for the next read."""
    for piece in pieces:
        yield piece
    if reached is not None:
        reached.set()
    await asyncio.Event().wait()
    yield b""


# ---------------------------------------------------------------------------
# build_request
# ---------------------------------------------------------------------------

class TestBuildRequest:
    @pytest.mark.parametrize("mode, endpoint, config", [
        (InteractionMode.PLAIN, "generateContent",
         {"thinkingConfig": {"thinkingLevel": "high"}}),
        (InteractionMode.STRUCTURED, "generateContent",
         {"responseMimeType": "application/json", "thinkingConfig": {"thinkingLevel": "low"}}),
        (InteractionMode.STREAM, "streamGenerateContent",
         {"thinkingConfig": {"thinkingLevel": "low"}}),
    ])
    def test_shape_depends_on_mode_only(self, orchestrator, mode, endpoint, config):
        inputs = [
            ("What is log base 2 of 8?", []),
            ("", [{"role": "assistant", "text": "Hi"}]),
            ("x" * 500, [{"role": "user", "text": "a"}, {"role": "assistant", "text": "b"}]),
        ]
        for utterance, history in inputs:
            request = orchestrator.build_request(utterance, history, "sys", mode)

            assert request.endpoint == endpoint
            assert request.generation_config == config
            assert request.body["mode"] == mode.value

    def test_stream_body_carries_history_plus_utterance(self, orchestrator):
        request = orchestrator.build_request(
            "Why?", [{"role": "assistant", "text": "Hello"}], "sys", InteractionMode.STREAM,
        )

        assert request.body == {
            "mode": "stream",
            "systemInstruction": "sys",
            "history": [
                {"role": "assistant", "text": "Hello"},
                {"role": "user", "text": "Why?"},
            ],
        }

    def test_single_shot_body_carries_prompt(self, orchestrator):
        request = orchestrator.build_request("Explain", [], "", InteractionMode.PLAIN)

        assert request.body == {"mode": "plain", "systemInstruction": "", "prompt": "Explain"}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStream:
    @pytest.mark.asyncio
    async def test_character_split_stream_builds_hello(self, orchestrator, gateway, store):
        raw = data_line("Hel") + data_line("lo") + "data: [DONE]\n"
        gateway.queue_stream(chunked(*[c.encode() for c in raw]))

        outcome = await orchestrator.send("Say hello", mode=InteractionMode.STREAM)

        assert outcome.status == "closed"
        assert outcome.message.text == "Hello"
        assert [m.role for m in store.snapshot()] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert store.snapshot()[0].text == "Say hello"
        assert not store.is_open
        assert orchestrator.state is RequestState.CLOSED

    @pytest.mark.asyncio
    async def test_event_order(self, orchestrator, gateway, store):
        gateway.queue_stream(sse_body("2^3", " = 8"))

        events = [e async for e in orchestrator.iter_send("2^3?")]
        types = [type(e) for e in events]

        assert types == [
            TurnOpenedEvent,
            DeltaEvent,
            DeltaEvent,
            TurnClosedEvent,
            SendCompleteEvent,
        ]
        assert [e.text for e in events if isinstance(e, DeltaEvent)] == ["2^3", " = 8"]
        assert events[3].text == "2^3 = 8"

    @pytest.mark.asyncio
    async def test_snapshot_tracks_each_delta(self, orchestrator, gateway, store):
        gateway.queue_stream(sse_body("a", "b", "c"))

        seen = []
        async for event in orchestrator.iter_send("abc"):
            if isinstance(event, DeltaEvent):
                seen.append(store.snapshot()[-1].text)
                assert store.is_open

        assert seen == ["a", "ab", "abc"]

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self, orchestrator, gateway):
        body = (data_line("one") + "data: not-json\n" + data_line(" two") + "data: [DONE]\n")
        gateway.queue_stream(body.encode())

        outcome = await orchestrator.send("count")

        assert outcome.message.text == "one two"
        assert outcome.extractor_stats.malformed == 1
        assert outcome.extractor_stats.deltas == 2

    @pytest.mark.asyncio
    async def test_history_defaults_to_transcript(self, orchestrator, gateway, store):
        store.append(Message(role=MessageRole.ASSISTANT, text="Welcome"))
        gateway.queue_stream(sse_body("first"))
        gateway.queue_stream(sse_body("second"))

        await orchestrator.send("q1")
        await orchestrator.send("q2")

        assert gateway.requests[0]["history"] == [
            {"role": "assistant", "text": "Welcome"},
            {"role": "user", "text": "q1"},
        ]
        assert gateway.requests[1]["history"][-3:] == [
            {"role": "user", "text": "q1"},
            {"role": "assistant", "text": "first"},
            {"role": "user", "text": "q2"},
        ]
        assert gateway.requests[0]["systemInstruction"] == "Be brief."

    @pytest.mark.asyncio
    async def test_stream_without_terminator_closes_at_end_of_body(self, orchestrator, gateway, store):
        gateway.queue_stream(sse_body("partial", done=False))

        outcome = await orchestrator.send("q")

        assert outcome.status == "closed"
        assert outcome.message.text == "partial"
        assert not store.is_open

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stop_after, kept", [
        (TurnOpenedEvent, ""),
        (DeltaEvent, "one"),
    ])
    async def test_leaving_early_closes_turn(self, orchestrator, gateway, store, stop_after, kept):
        gateway.queue_stream(sse_body("one", "two", "three"))
        gateway.queue_stream(sse_body("again"))

        async with aclosing(orchestrator.iter_send("q")) as events:
            async for event in events:
                if isinstance(event, stop_after):
                    break

        assert not store.is_open
        assert not orchestrator.in_flight
        assert store.snapshot()[-1].text == kept

        outcome = await orchestrator.send("next")
        assert outcome.message.text == "again"
        assert [m.text for m in store.snapshot()] == ["q", kept, "next", "again"]

    @pytest.mark.asyncio
    async def test_frame_iterator_closed_after_terminator(self, orchestrator, gateway, monkeypatch):
        closed = []

        class TrackingDecoder(FrameDecoder):
            async def frames(self, fragments):
                try:
                    async for frame in super().frames(fragments):
                        yield frame
                finally:
                    closed.append(True)

        monkeypatch.setattr(orchestrator_module, "FrameDecoder", TrackingDecoder)
        gateway.queue_stream(sse_body("done") + b"data: ignored-after-terminator\n")

        outcome = await orchestrator.send("q")

        assert outcome.message.text == "done"
        assert closed == [True]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_midstream_transport_failure_keeps_partial_text(self, orchestrator, gateway, store):
        gateway.queue_stream(chunked(
            data_line("Par").encode(),
            error=httpx.ReadError("connection reset"),
        ))

        outcome = await orchestrator.send("q")

        assert outcome.status == "failed"
        assert outcome.message.text == "Par" + FAILURE_NOTICE
        assert store.snapshot()[-1].text.startswith("Par")
        assert not store.is_open
        assert orchestrator.state is RequestState.FAILED
        assert "stream interrupted" in outcome.error

    @pytest.mark.asyncio
    async def test_http_error_leaves_transcript_unchanged(self, orchestrator, gateway, store):
        gateway.queue_stream(
            b'{"error": "Upstream API error: 429", "details": "quota"}', status=429,
        )

        with pytest.raises(HttpError) as exc_info:
            await orchestrator.send("q")

        assert exc_info.value.status == 429
        assert "quota" in exc_info.value.body
        assert len(store) == 0
        assert orchestrator.state is RequestState.FAILED
        assert not orchestrator.in_flight

    @pytest.mark.asyncio
    async def test_gateway_config_error(self, orchestrator, gateway, store):
        gateway.queue_json(
            {"error": "GEMINI_API_KEY is not configured on the server", "code": "config_error"},
            status=500,
        )

        with pytest.raises(ConfigError, match="GEMINI_API_KEY"):
            await orchestrator.send("q", mode=InteractionMode.PLAIN)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_connect_failure_is_transport_error(self, orchestrator, gateway, store):
        gateway.responses.append(httpx.ConnectError("refused"))

        with pytest.raises(TransportError):
            await orchestrator.send("q")
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Single-shot
# ---------------------------------------------------------------------------

class TestSingleShot:
    @pytest.mark.asyncio
    async def test_plain_appends_one_message(self, orchestrator, gateway, store):
        gateway.queue_json(reply_document("log base 2 of 8 is 3, because 2^3 = 8."))

        outcome = await orchestrator.send(
            "What is log base 2 of 8?", [], "", InteractionMode.PLAIN,
        )

        assert gateway.requests == [
            {"mode": "plain", "systemInstruction": "", "prompt": "What is log base 2 of 8?"},
        ]
        assert outcome.status == "closed"
        assert len(store) == 1
        assert store.snapshot()[0] == Message(
            role=MessageRole.ASSISTANT, text="log base 2 of 8 is 3, because 2^3 = 8.",
        )
        assert outcome.data is None

    @pytest.mark.asyncio
    async def test_structured_parses_json(self, orchestrator, gateway, store):
        quiz = {"question": "$\\log_2 8$?", "options": ["2", "3", "4", "8"], "correct": 1}
        gateway.queue_json(reply_document(json.dumps(quiz)))

        outcome = await orchestrator.send("quiz", mode=InteractionMode.STRUCTURED)

        assert outcome.data == quiz
        assert json.loads(store.snapshot()[-1].text) == quiz

    @pytest.mark.asyncio
    async def test_structured_reply_not_json(self, orchestrator, gateway, store):
        gateway.queue_json(reply_document("not json at all"))

        with pytest.raises(ResponseFormatError):
            await orchestrator.send("quiz", mode=InteractionMode.STRUCTURED)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_reply_without_text(self, orchestrator, gateway, store):
        gateway.queue_json({"candidates": []})

        with pytest.raises(ResponseFormatError):
            await orchestrator.send("q", mode=InteractionMode.PLAIN)
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_send_rejected_while_in_flight(self, orchestrator, gateway, store):
        reached = asyncio.Event()
        gateway.queue_stream(blocking(data_line("slow").encode(), reached=reached))
        token = CancellationToken()

        first = asyncio.create_task(orchestrator.send("one", token=token))
        await reached.wait()

        with pytest.raises(RequestInFlightError):
            await orchestrator.send("two")
        assert len(gateway.requests) == 1

        token.cancel("done")
        outcome = await first
        assert outcome.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_between_deltas(self, orchestrator, gateway, store):
        gateway.queue_stream(sse_body("one", "two", "three"))
        token = CancellationToken()

        events = []
        async for event in orchestrator.iter_send("q", token=token):
            events.append(event)
            if isinstance(event, DeltaEvent):
                token.cancel("user navigated away")

        outcome = events[-1].outcome
        assert outcome.status == "cancelled"
        assert outcome.message.text == "one"
        assert outcome.error == "user navigated away"
        assert not store.is_open

    @pytest.mark.asyncio
    async def test_cancel_abandons_pending_read(self, orchestrator, gateway, store):
        reached = asyncio.Event()
        gateway.queue_stream(blocking(data_line("Par").encode(), reached=reached))
        token = CancellationToken()

        task = asyncio.create_task(orchestrator.send("q", token=token))
        await reached.wait()
        token.cancel()
        outcome = await asyncio.wait_for(task, timeout=1)

        assert outcome.status == "cancelled"
        assert outcome.message.text == "Par"
        assert not store.is_open
        assert not orchestrator.in_flight

    @pytest.mark.asyncio
    async def test_cancel_before_send(self, orchestrator, gateway, store):
        token = CancellationToken()
        token.cancel()

        outcome = await orchestrator.send("q", token=token)

        assert outcome.status == "cancelled"
        assert gateway.requests == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_turn(self, orchestrator, gateway, store):
        reached = asyncio.Event()
        gateway.queue_stream(blocking(data_line("Par").encode(), reached=reached))

        task = asyncio.create_task(orchestrator.send("q"))
        await reached.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not store.is_open
        assert store.snapshot()[-1].text == "Par"
        assert not orchestrator.in_flight


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------

class TestTracing:
    @pytest.fixture(autouse=True)
    def _mock_tracer(self):
        self.span = MagicMock()
        tracer = MagicMock()
        tracer.start_as_current_span.return_value.__enter__ = MagicMock(return_value=self.span)
        tracer.start_as_current_span.return_value.__exit__ = MagicMock(return_value=False)
        inst._tracer = tracer
        yield
        inst._tracer = None

    @pytest.mark.asyncio
    async def test_stream_stats_recorded(self, orchestrator, gateway):
        gateway.queue_stream(sse_body("a", "b"))

        await orchestrator.send("q")

        self.span.set_attribute.assert_any_call("tutorchat.stream.deltas", 2)
        self.span.set_attribute.assert_any_call("tutorchat.stream.malformed", 0)

    @pytest.mark.asyncio
    async def test_http_error_recorded(self, orchestrator, gateway):
        gateway.queue_json({"error": "bad"}, status=400)

        with pytest.raises(HttpError):
            await orchestrator.send("q", mode=InteractionMode.PLAIN)

        self.span.record_exception.assert_called_once()
