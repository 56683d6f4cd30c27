from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9
DEFAULT_TOP_K = 0
DEFAULT_MAX_TOKENS = 512


def _to_number(value: Any, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else fallback
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return fallback
        return parsed if math.isfinite(parsed) else fallback
    return fallback


def _to_nullable_int(value: Any, fallback: int | None) -> int | None:
    if value is None or value == "":
        return fallback
    parsed = _to_number(value, math.nan)
    if not math.isfinite(parsed):
        return fallback
    return int(parsed)


def normalize_stop_strings(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(entry) for entry in value if entry is not None and str(entry)]
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return []


class GenerationSettings(BaseModel):
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    top_k: float = DEFAULT_TOP_K
    max_tokens: int = DEFAULT_MAX_TOKENS
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    seed: int | None = None
    stop: list[str] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict | None) -> "GenerationSettings":
        if not isinstance(payload, dict):
            return cls()
        raw = payload.get("settings")
        settings = raw if isinstance(raw, dict) else {}
        return cls(
            temperature=_to_number(settings.get("temperature"), DEFAULT_TEMPERATURE),
            top_p=_to_number(settings.get("top_p"), DEFAULT_TOP_P),
            top_k=_to_number(settings.get("top_k"), DEFAULT_TOP_K),
            max_tokens=max(
                1, round(_to_number(settings.get("max_tokens"), DEFAULT_MAX_TOKENS))
            ),
            presence_penalty=_to_number(settings.get("presence_penalty"), 0.0),
            frequency_penalty=_to_number(settings.get("frequency_penalty"), 0.0),
            seed=_to_nullable_int(settings.get("seed"), None),
            stop=normalize_stop_strings(settings.get("stop")),
        )

    def request_extras(self) -> dict[str, Any]:
        """Sampling fields only sent when set away from their defaults."""
        extra: dict[str, Any] = {}
        if self.top_k > 0:
            extra["top_k"] = int(self.top_k)
        if self.seed is not None:
            extra["seed"] = self.seed
        if self.stop:
            extra["stop"] = list(self.stop)
        return extra


def _clean_name(raw: Any) -> str | None:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def _first_present(payload: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def prompt_from_payload(payload: dict | None) -> str:
    if not isinstance(payload, dict):
        return ""
    prompt = payload.get("prompt")
    return prompt if isinstance(prompt, str) else ""


def template_name_from_payload(payload: dict | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _clean_name(_first_present(payload, ("template_name", "templateName", "template")))


def theme_name_from_payload(payload: dict | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _clean_name(_first_present(payload, ("theme_name", "themeName", "theme")))


def chat_mode_from_payload(payload: dict | None) -> bool:
    if not isinstance(payload, dict):
        return False
    return bool(_first_present(payload, ("chat_mode", "chatMode")))


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """The editor-owned fields of a session payload, used for dirty checks."""

    prompt: str = ""
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    template_name: str | None = None
    theme_name: str | None = None
    chat_mode: bool = False

    @classmethod
    def from_payload(cls, payload: dict | None) -> "SessionSnapshot":
        return cls(
            prompt=prompt_from_payload(payload),
            settings=GenerationSettings.from_payload(payload),
            template_name=template_name_from_payload(payload),
            theme_name=theme_name_from_payload(payload),
            chat_mode=chat_mode_from_payload(payload),
        )

    def merge_into(self, payload: dict | None) -> dict[str, Any]:
        base = dict(payload) if isinstance(payload, dict) else {}
        base.update(
            {
                "prompt": self.prompt,
                "settings": self.settings.model_dump(),
                "template_name": self.template_name,
                "theme_name": self.theme_name,
                "chat_mode": self.chat_mode,
            }
        )
        return base


def new_session_payload() -> dict[str, Any]:
    return SessionSnapshot().merge_into(None)


class WritingSession(BaseModel):
    id: str
    name: str
    payload: dict = Field(default_factory=dict)
    schema_version: int = 1
    version: int
    version_parent_id: str | None = None
    created_at: str | None = None
    last_modified: str | None = None
    deleted: bool = False
    client_id: str | None = None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.from_payload(self.payload)


class SessionListItem(BaseModel):
    id: str
    name: str
    last_modified: str | None = None
    version: int


class TemplateRecord(BaseModel):
    id: int | None = None
    name: str
    payload: dict = Field(default_factory=dict)
    schema_version: int = 1
    version_parent_id: str | None = None
    is_default: bool = False
    created_at: str | None = None
    last_modified: str | None = None
    deleted: bool = False
    client_id: str | None = None
    version: int = 1


class ThemeRecord(BaseModel):
    id: int | None = None
    name: str
    class_name: str | None = None
    css: str | None = None
    schema_version: int = 1
    version_parent_id: str | None = None
    is_default: bool = False
    order: int = 0
    created_at: str | None = None
    last_modified: str | None = None
    deleted: bool = False
    client_id: str | None = None
    version: int = 1


class ServerCapabilities(BaseModel):
    sessions: bool = False
    templates: bool = False
    themes: bool = False
    tokenize: bool = False
    token_count: bool = False


class WritingCapabilities(BaseModel):
    version: int = 1
    server: ServerCapabilities = Field(default_factory=ServerCapabilities)
    default_provider: str | None = None
    providers: list[dict] | None = None
    requested: dict | None = None
