"""Explicit configuration values for the client and the gateway.

Nothing here is read at import time; callers build a config once
(directly or via ``from_env``) and pass it to the component.
"""

import os

from pydantic import BaseModel, model_validator

from tutorchat.errors import ConfigError

DEFAULT_MODEL = "gemini-3-pro-preview"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class ClientConfig(BaseModel):
    """Where the orchestrator sends requests.

    Args:
        gateway_url: Full URL of the gateway route, e.g.
            ``http://localhost:8000/api/gemini``.
        timeout: Seconds allowed for connect and for each read.
        system_instruction: Default system instruction for ``send``.
    """

    gateway_url: str
    timeout: float = 600.0
    system_instruction: str = ""

    @model_validator(mode="before")
    @classmethod
    def _require_url(cls, data):
        # ConfigError is not a ValueError, so pydantic lets it propagate.
        if not isinstance(data, dict):
            return data
        url = data.get("gateway_url")
        if not isinstance(url, str) or not url.strip():
            raise ConfigError("gateway_url must be a non-empty URL")
        return {**data, "gateway_url": url.strip()}

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        url = overrides.pop("gateway_url", None) or os.getenv("TUTORCHAT_GATEWAY_URL")
        if not url:
            raise ConfigError("TUTORCHAT_GATEWAY_URL is not set")
        timeout = os.getenv("TUTORCHAT_TIMEOUT")
        if timeout and "timeout" not in overrides:
            overrides["timeout"] = float(timeout)
        return cls(gateway_url=url, **overrides)


class GatewaySettings(BaseModel):
    """Server-side settings for the relay.

    ``api_key`` may be missing at startup; the gateway reports a
    configuration error on each request until it is set.
    """

    api_key: str | None = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 600.0

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            api_key=os.getenv("GEMINI_API_KEY") or None,
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL),
        )

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigError("GEMINI_API_KEY is not configured on the server")
        return self.api_key

    def upstream_url(self, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:{endpoint}"
