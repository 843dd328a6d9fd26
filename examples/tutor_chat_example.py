"""Terminal tutor: stream answers about logarithmic functions.

Demonstrates:
- Building a TranscriptStore and RequestOrchestrator from explicit config
- Pulling events from iter_send() and printing deltas as they arrive
- Structured mode for quiz generation, plain mode for explanations

Usage:
    uv run examples/serve_gateway.py &
    TUTORCHAT_GATEWAY_URL=http://localhost:8000/api/gemini \\
        uv run examples/tutor_chat_example.py --trace
    uv run examples/tutor_chat_example.py --offline
"""

import argparse
import asyncio
import json
import logging
from contextlib import aclosing

import httpx
from pydantic import BaseModel, ValidationError

from tutorchat.config import ClientConfig
from tutorchat.errors import TutorChatError
from tutorchat.events import DeltaEvent, SendCompleteEvent
from tutorchat.modes import InteractionMode
from tutorchat.orchestrator import FAILURE_NOTICE, RequestOrchestrator
from tutorchat.sse import sse_generator, text_chunk
from tutorchat.transcript import TranscriptStore

GREETING = (
    "Hi! I'm your tutor for logarithmic functions. Ask me about domains, "
    "graphs, properties or any specific problem."
)

SYSTEM_PROMPT = """You are a concise high-school maths tutor focused on logarithmic functions.
1. No filler: open with at most one sentence, then answer the core question.
2. Structure: present points as Markdown lists.
3. Formulas: wrap every formula in single $ signs (e.g. $\\log_a x$).
4. Layout: leave a blank line between paragraphs."""

QUIZ_PROMPT = (
    "Generate one multiple-choice question about high-school logarithmic "
    "functions. Return pure JSON in the form: "
    '{"question": "...(LaTeX)", "options": ["A", "B", "C", "D"], '
    '"correct": 0, "explanation": "...(LaTeX)"}'
)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.FileHandler('tutorchat.log'),
            logging.StreamHandler()
        ]
    )


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from tutorchat.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def offline_client() -> httpx.AsyncClient:
    """A client whose 'gateway' answers locally, for trying the UI."""

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["mode"] == "stream":
            question = body["history"][-1]["text"]
            words = f"You asked: {question}. Remember $\\log_2 8 = 3$.".split(" ")
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=sse_generator(text_chunk(w + " ") for w in words),
            )
        if body["mode"] == "structured":
            quiz = {
                "question": "$\\log_2 8 = ?$",
                "options": ["2", "3", "4", "8"],
                "correct": 1,
                "explanation": "$2^3 = 8$",
            }
            return httpx.Response(200, json=text_chunk(json.dumps(quiz)))
        return httpx.Response(200, json=text_chunk("A logarithm undoes exponentiation."))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def stream_answer(orchestrator: RequestOrchestrator, question: str) -> None:
    print("Tutor: ", end="", flush=True)
    async with aclosing(
        orchestrator.iter_send(question, mode=InteractionMode.STREAM)
    ) as events:
        async for event in events:
            if isinstance(event, DeltaEvent):
                print(event.text, end="", flush=True)
            elif isinstance(event, SendCompleteEvent) and event.outcome.status == "failed":
                print(FAILURE_NOTICE, end="")
    print("\n")


class Quiz(BaseModel):
    question: str
    options: list[str]
    correct: int = 0
    explanation: str = ""


def format_quiz(data) -> str:
    """Render a structured quiz reply, or a notice if it has the wrong shape."""
    try:
        quiz = Quiz.model_validate(data)
    except ValidationError as e:
        logging.getLogger(__name__).warning(f"Unexpected quiz shape: {e}")
        return "[The tutor returned a quiz in an unexpected format, try /quiz again]"
    lines = [f"Quiz: {quiz.question}"]
    lines.extend(f"  {chr(65 + i)}. {option}" for i, option in enumerate(quiz.options))
    return "\n".join(lines)


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--gateway-url", default=None)
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    setup_logging(args.verbose)
    if args.trace:
        setup_tracing("tutorchat")

    if args.offline:
        config = ClientConfig(gateway_url="http://offline/api/gemini")
        client = offline_client()
    else:
        config = ClientConfig.from_env(gateway_url=args.gateway_url)
        client = None
    config = config.model_copy(update={"system_instruction": SYSTEM_PROMPT})

    store = TranscriptStore(greeting=GREETING)
    async with RequestOrchestrator(config, store, client=client) as orchestrator:
        print(f"Tutor: {GREETING}\n")
        print("Commands: /quiz, /explain <topic>, /quit\n")
        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            if not user_input:
                continue
            if user_input == "/quit":
                break

            try:
                if user_input == "/quiz":
                    outcome = await orchestrator.send(
                        QUIZ_PROMPT, system_instruction="",
                        mode=InteractionMode.STRUCTURED,
                    )
                    print(format_quiz(outcome.data) + "\n")
                elif user_input.startswith("/explain "):
                    outcome = await orchestrator.send(
                        user_input.removeprefix("/explain "),
                        mode=InteractionMode.PLAIN,
                    )
                    print(f"Tutor: {outcome.message.text}\n")
                else:
                    await stream_answer(orchestrator, user_input)
            except TutorChatError as e:
                print(f"\n[error] {e}\n")
        if client is not None:
            await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
