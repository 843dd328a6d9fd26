import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from tutorchat.cancellation import CancellationToken
from tutorchat.config import ClientConfig
from tutorchat.deltas import DeltaExtractor, ExtractorStats, extract_reply_text
from tutorchat.errors import (
    ConfigError,
    HttpError,
    RequestCancelledError,
    RequestInFlightError,
    ResponseFormatError,
    TransportError,
    TutorChatError,
)
from tutorchat.events import (
    DeltaEvent,
    SendCompleteEvent,
    StreamEvent,
    TurnClosedEvent,
    TurnOpenedEvent,
)
from tutorchat.frames import FrameDecoder, FrameStats
from tutorchat.instrumentation import record_error, record_stream_stats, request_span
from tutorchat.message import Message, MessageRole
from tutorchat.modes import InteractionMode, profile_for
from tutorchat.transcript import TranscriptStore

logger = logging.getLogger(__name__)

FAILURE_NOTICE = "\n[Network error, please try again later]"

_END = object()


class RequestState(Enum):
    IDLE = "idle"
    SENT = "sent"
    STREAMING = "streaming"
    RECEIVING = "receiving"
    AWAITING_WHOLE = "awaiting_whole"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class OutboundRequest:
    """What goes to the gateway, plus the upstream shape it implies."""

    mode: InteractionMode
    endpoint: str
    generation_config: dict
    body: dict


@dataclass
class SendOutcome:
    """The result of a single ``send()``.

    ``status`` is ``"closed"`` on success, ``"failed"`` when the stream
    broke after the turn opened, and ``"cancelled"`` when the token
    fired.  ``data`` holds the parsed JSON for structured requests.
    """

    mode: InteractionMode
    status: str
    message: Message | None = None
    data: Any = None
    error: str | None = None
    frame_stats: FrameStats = field(default_factory=FrameStats)
    extractor_stats: ExtractorStats = field(default_factory=ExtractorStats)


class RequestOrchestrator:
    """Sends one user utterance at a time and folds the reply into a transcript.

    ``send()`` drains ``iter_send()``.  ``iter_send()`` is the streaming
    entry point: callers pull events and read ``store.snapshot()``
    after each one.

    Only one request runs at a time; a second ``send()`` while one is
    in flight raises :class:`RequestInFlightError` and changes nothing.

    Args:
        config: Gateway location and timeouts.
        store: The transcript replies are folded into.
        client: Optional ``httpx.AsyncClient``; one is created on first
            use (and closed by ``aclose()``) when omitted.
    """

    def __init__(
        self,
        config: ClientConfig,
        store: TranscriptStore,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store
        self.state = RequestState.IDLE
        self._client = client
        self._owns_client = client is None
        self._in_flight = False

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def build_request(
        self,
        utterance: str,
        history: list[dict],
        system_instruction: str,
        mode: InteractionMode,
    ) -> OutboundRequest:
        mode = InteractionMode.parse(mode)
        profile = profile_for(mode)
        body: dict = {"mode": mode.value, "systemInstruction": system_instruction}
        if profile.incremental:
            body["history"] = [*history, {"role": MessageRole.USER.value, "text": utterance}]
        else:
            body["prompt"] = utterance
        return OutboundRequest(
            mode=mode,
            endpoint=profile.endpoint,
            generation_config=profile.generation_config(),
            body=body,
        )

    async def send(
        self,
        utterance: str,
        history: list[dict] | None = None,
        system_instruction: str | None = None,
        mode: InteractionMode = InteractionMode.STREAM,
        token: CancellationToken | None = None,
    ) -> SendOutcome:
        """Send *utterance* and wait until the reply is folded in."""
        outcome: SendOutcome | None = None
        async with aclosing(self.iter_send(
            utterance, history, system_instruction, mode, token,
        )) as events:
            async for event in events:
                if isinstance(event, SendCompleteEvent):
                    outcome = event.outcome
        if outcome is None:
            raise RuntimeError("iter_send() ended without emitting SendCompleteEvent")
        return outcome

    async def iter_send(
        self,
        utterance: str,
        history: list[dict] | None = None,
        system_instruction: str | None = None,
        mode: InteractionMode = InteractionMode.STREAM,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send *utterance*, yielding events as the reply is applied.

        Wrap the generator in ``contextlib.aclosing`` so that leaving the
        loop early closes the open turn and frees the orchestrator for
        the next request right away::

            async with aclosing(orchestrator.iter_send("Why?")) as events:
                async for event in events:
                    if isinstance(event, DeltaEvent):
                        print(event.text, end="")
        """
        if self._in_flight:
            raise RequestInFlightError("a request is already in flight")
        self._in_flight = True
        try:
            token = token or CancellationToken()
            if history is None:
                history = self.store.history()
            if system_instruction is None:
                system_instruction = self.config.system_instruction
            request = self.build_request(utterance, history, system_instruction, mode)

            async with request_span(request.mode.value, self.store.session_id) as span:
                self._transition(RequestState.SENT)
                try:
                    if request.mode is InteractionMode.STREAM:
                        async with aclosing(
                            self._stream(request, utterance, token, span)
                        ) as events:
                            async for event in events:
                                yield event
                    else:
                        outcome = await self._single_shot(request, token)
                        yield SendCompleteEvent(outcome=outcome)
                except TutorChatError as e:
                    self._transition(RequestState.FAILED)
                    record_error(span, e)
                    raise
        finally:
            self._in_flight = False

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(
        self, request: OutboundRequest, utterance: str,
        token: CancellationToken, span,
    ) -> AsyncIterator[StreamEvent]:
        client = self._get_client()
        http_request = client.build_request(
            "POST", self.config.gateway_url, json=request.body,
            headers={"Accept": "text/event-stream"},
        )
        try:
            response = await self._race(client.send(http_request, stream=True), token)
        except RequestCancelledError as e:
            logger.info(f"Request cancelled before the reply arrived: {e}")
            self._transition(RequestState.CLOSED)
            yield SendCompleteEvent(outcome=SendOutcome(
                mode=request.mode, status="cancelled", error=str(e),
            ))
            return
        except httpx.HTTPError as e:
            raise TransportError(f"could not reach gateway: {e}") from e

        try:
            if response.is_error:
                body = await response.aread()
                raise self._http_error(response.status_code, body.decode("utf-8", "replace"))

            self.store.append(Message(role=MessageRole.USER, text=utterance))
            self.store.open_turn(MessageRole.ASSISTANT)
            self._transition(RequestState.STREAMING)

            decoder = FrameDecoder()
            extractor = DeltaExtractor()
            frames = decoder.frames(response.aiter_bytes())
            deltas = extractor.deltas(frames)
            status, error = "closed", None
            try:
                yield TurnOpenedEvent(role=MessageRole.ASSISTANT.value)
                while True:
                    delta = await self._race(self._next(deltas), token)
                    if delta is _END:
                        break
                    self.store.append_delta(delta)
                    self._transition(RequestState.RECEIVING)
                    yield DeltaEvent(text=delta)
            except RequestCancelledError as e:
                logger.info(f"Stream cancelled: {e}")
                status, error = "cancelled", str(e)
            except httpx.HTTPError as e:
                failure = TransportError(f"stream interrupted: {e!r}")
                logger.warning(f"{failure}; keeping partial reply")
                record_error(span, failure)
                self.store.append_delta(FAILURE_NOTICE)
                status, error = "failed", str(failure)
            finally:
                self.store.close_turn()
                await deltas.aclose()
                await frames.aclose()

            message = self.store.snapshot()[-1]
            self._transition(RequestState.FAILED if status == "failed" else RequestState.CLOSED)
            record_stream_stats(span, decoder.stats, extractor.stats)
            if extractor.stats.malformed:
                logger.info(f"Skipped {extractor.stats.malformed} malformed frame(s)")
            yield TurnClosedEvent(text=message.text)
            yield SendCompleteEvent(outcome=SendOutcome(
                mode=request.mode,
                status=status,
                message=message,
                error=error,
                frame_stats=decoder.stats,
                extractor_stats=extractor.stats,
            ))
        finally:
            await response.aclose()

    @staticmethod
    async def _next(deltas: AsyncIterator[str]):
        try:
            return await deltas.__anext__()
        except StopAsyncIteration:
            return _END

    @staticmethod
    async def _race(awaitable, token: CancellationToken):
        """Await *awaitable* unless *token* fires first.

        On cancellation the pending read is abandoned and
        :class:`RequestCancelledError` is raised; a result that lands
        at the same moment is discarded.
        """
        if token.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            token.raise_if_cancelled()
        read = asyncio.ensure_future(awaitable)
        cancel = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {read, cancel}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel.cancel()
            if not read.done():
                read.cancel()
                await asyncio.wait({read})
        if cancel in done or token.cancelled:
            if read.done() and not read.cancelled() and read.exception() is None:
                result = read.result()
                if isinstance(result, httpx.Response):
                    await result.aclose()
            token.raise_if_cancelled()
        return read.result()

    # ------------------------------------------------------------------
    # Single-shot
    # ------------------------------------------------------------------

    async def _single_shot(
        self, request: OutboundRequest, token: CancellationToken,
    ) -> SendOutcome:
        client = self._get_client()
        self._transition(RequestState.AWAITING_WHOLE)
        try:
            response = await self._race(
                client.post(self.config.gateway_url, json=request.body), token,
            )
        except RequestCancelledError as e:
            logger.info(f"Request cancelled before the reply arrived: {e}")
            self._transition(RequestState.CLOSED)
            return SendOutcome(mode=request.mode, status="cancelled", error=str(e))
        except httpx.HTTPError as e:
            raise TransportError(f"could not reach gateway: {e}") from e

        if response.is_error:
            raise self._http_error(response.status_code, response.text)

        try:
            document = response.json()
        except ValueError as e:
            raise ResponseFormatError(f"reply is not JSON: {response.text[:200]!r}") from e
        text = extract_reply_text(document)
        if text is None:
            raise ResponseFormatError("reply carried no text")

        data = None
        if request.mode is InteractionMode.STRUCTURED:
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise ResponseFormatError(f"structured reply is not JSON: {e}") from e

        message = Message(role=MessageRole.ASSISTANT, text=text)
        self.store.append(message)
        self._transition(RequestState.CLOSED)
        return SendOutcome(mode=request.mode, status="closed", message=message, data=data)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    def _transition(self, state: RequestState) -> None:
        if state is not self.state:
            logger.debug(f"[{self.store.session_id}] {self.state.value} -> {state.value}")
            self.state = state

    @staticmethod
    def _http_error(status: int, body: str) -> TutorChatError:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and payload.get("code") == "config_error":
            logger.error(f"Gateway configuration error: {payload.get('error')}")
            return ConfigError(payload.get("error") or "gateway is not configured")
        logger.error(f"Gateway returned HTTP {status}")
        return HttpError(status, body)
