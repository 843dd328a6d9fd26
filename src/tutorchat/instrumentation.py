"""Optional OpenTelemetry instrumentation for tutorchat.

Call ``tutorchat.instrumentation.instrument()`` once at startup to
enable tracing.  Requires ``opentelemetry-api`` to be installed; the
library works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "tutorchat") -> None:
    """Enable OpenTelemetry tracing for requests and the gateway.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install tutorchat[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            SimpleSpanProcessor, ConsoleSpanExporter,
        )

        provider = TracerProvider()
        provider.add_span_processor(
            SimpleSpanProcessor(ConsoleSpanExporter())
        )
        trace.set_tracer_provider(provider)

        from tutorchat.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tutorchat[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("tutorchat instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def request_span(mode: str, session_id: str):
    """Wrap one ``RequestOrchestrator.send()`` in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {mode}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "tutorchat.mode": mode,
            "tutorchat.session_id": session_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def relay_span(mode: str, model: str):
    """Wrap one gateway relay to the upstream API."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"relay {mode}",
        kind=SpanKind.SERVER,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": "gemini",
            "gen_ai.request.model": model,
            "tutorchat.mode": mode,
        },
    ) as span:
        yield span


def record_stream_stats(span, frame_stats, extractor_stats) -> None:
    """Copy decoder and extractor counters onto a span."""
    if span is None:
        return
    span.set_attribute("tutorchat.stream.frames", frame_stats.frames)
    span.set_attribute("tutorchat.stream.dropped_lines", frame_stats.dropped)
    span.set_attribute("tutorchat.stream.deltas", extractor_stats.deltas)
    span.set_attribute("tutorchat.stream.malformed", extractor_stats.malformed)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
