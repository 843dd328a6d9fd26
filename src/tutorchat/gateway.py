"""Credential-injecting relay in front of the Gemini API.

``POST /api/gemini`` accepts ``{mode, prompt?, history?,
systemInstruction?}``, adds the server-side API key, forwards the
request upstream and relays the answer: verbatim as
``text/event-stream`` for ``stream``, as one JSON document otherwise.

The key never appears in a response.  When it is missing every request
fails with HTTP 500 and ``code: "config_error"`` before any upstream
call.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from tutorchat.config import GatewaySettings
from tutorchat.errors import ConfigError
from tutorchat.instrumentation import record_error, relay_span
from tutorchat.modes import InteractionMode, build_upstream_body, profile_for

logger = logging.getLogger(__name__)

ROUTE = "/api/gemini"


class HistoryEntry(BaseModel):
    role: str = "user"
    text: str = ""


class RelayBody(BaseModel):
    mode: str | None = None
    prompt: str | None = None
    history: list[HistoryEntry] = []
    systemInstruction: str | None = None


def _error(status: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


def create_app(
    settings: GatewaySettings | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the relay app.

    Args:
        settings: Credential and upstream location; read from the
            environment when omitted.
        client: Upstream HTTP client.  One is created per app when
            omitted and closed on shutdown.
    """
    settings = settings or GatewaySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if client is None:
            await app.state.client.aclose()

    app = FastAPI(title="tutorchat gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.client = client or httpx.AsyncClient(timeout=settings.timeout)

    @app.api_route(ROUTE, methods=["GET", "PUT", "PATCH", "DELETE"])
    async def method_not_allowed() -> JSONResponse:
        return _error(405, "Method not allowed")

    @app.post(ROUTE)
    async def relay(request: Request):
        try:
            api_key = settings.require_api_key()
        except ConfigError as e:
            logger.error(str(e))
            return _error(500, str(e), code="config_error")

        try:
            body = RelayBody.model_validate(await request.json())
        except ValueError as e:
            return _error(400, f"Invalid request body: {e}")

        mode = InteractionMode.parse(body.mode)
        profile = profile_for(mode)
        upstream_body = build_upstream_body(
            mode,
            prompt=body.prompt,
            history=[entry.model_dump() for entry in body.history],
            system_instruction=body.systemInstruction,
        )
        upstream = app.state.client.build_request(
            "POST",
            settings.upstream_url(profile.endpoint),
            params=profile.query,
            headers={"x-goog-api-key": api_key},
            json=upstream_body,
        )

        async with relay_span(mode.value, settings.model) as span:
            try:
                response = await app.state.client.send(upstream, stream=profile.incremental)
            except httpx.HTTPError as e:
                logger.warning(f"Upstream request failed: {e!r}")
                record_error(span, e)
                return _error(500, str(e) or type(e).__name__)

            if response.is_error:
                details = (await response.aread()).decode("utf-8", "replace")
                await response.aclose()
                logger.error(f"Upstream API error {response.status_code}")
                return _error(
                    response.status_code,
                    f"Upstream API error: {response.status_code}",
                    details=details,
                )

            if profile.incremental:
                return StreamingResponse(
                    response.aiter_bytes(),
                    media_type="text/event-stream",
                    headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
                    background=BackgroundTask(response.aclose),
                )

            try:
                document = response.json()
            except ValueError as e:
                record_error(span, e)
                return _error(502, "Upstream reply is not JSON", details=response.text[:500])
            return JSONResponse(document)

    return app
