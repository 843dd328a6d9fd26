"""Interaction modes and the request shape each one implies.

The mode alone decides the upstream endpoint and generation
parameters; prompt and history only fill in ``contents``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class InteractionMode(Enum):
    PLAIN = "plain"
    STRUCTURED = "structured"
    STREAM = "stream"

    @classmethod
    def parse(cls, value: str | None) -> InteractionMode:
        """Read a wire mode name.

        ``json`` is accepted as an alias for ``structured``.  Anything
        unknown falls back to ``plain``.
        """
        if isinstance(value, InteractionMode):
            return value
        if value == "json":
            return cls.STRUCTURED
        try:
            return cls(value)
        except ValueError:
            return cls.PLAIN


@dataclass(frozen=True)
class ModeProfile:
    endpoint: str
    thinking_level: str
    response_mime_type: str | None = None
    query: dict[str, str] = field(default_factory=dict)

    @property
    def incremental(self) -> bool:
        return self.endpoint == "streamGenerateContent"

    def generation_config(self) -> dict:
        config: dict = {}
        if self.response_mime_type:
            config["responseMimeType"] = self.response_mime_type
        config["thinkingConfig"] = {"thinkingLevel": self.thinking_level}
        return config


_PROFILES: dict[InteractionMode, ModeProfile] = {
    InteractionMode.PLAIN: ModeProfile(
        endpoint="generateContent",
        thinking_level="high",
    ),
    InteractionMode.STRUCTURED: ModeProfile(
        endpoint="generateContent",
        thinking_level="low",
        response_mime_type="application/json",
    ),
    InteractionMode.STREAM: ModeProfile(
        endpoint="streamGenerateContent",
        thinking_level="low",
        query={"alt": "sse"},
    ),
}


def profile_for(mode: InteractionMode) -> ModeProfile:
    return _PROFILES[mode]


def _upstream_role(role: str) -> str:
    return "model" if role == "assistant" else "user"


def build_upstream_body(
    mode: InteractionMode,
    prompt: str | None = None,
    history: list[dict] | None = None,
    system_instruction: str | None = None,
) -> dict:
    """Render the ``generateContent`` request body for *mode*.

    Stream requests carry the whole history as ``contents``; single-shot
    requests carry only the prompt.
    """
    profile = profile_for(mode)
    if profile.incremental:
        contents = [
            {
                "role": _upstream_role(entry.get("role", "user")),
                "parts": [{"text": entry.get("text", "")}],
            }
            for entry in history or []
        ]
    else:
        contents = [{"parts": [{"text": prompt or ""}]}]
    return {
        "contents": contents,
        "systemInstruction": {"parts": [{"text": system_instruction or ""}]},
        "generationConfig": profile.generation_config(),
    }
