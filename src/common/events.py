from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class NoticeEvent:
    level: str
    message: str
    session_id: str | None = None
    action: str | None = None
    action_label: str | None = None
    role: str = "status"
    dismissible: bool = True


@dataclass(frozen=True, slots=True)
class SaveStartedEvent:
    session_id: str
    expected_version: int


@dataclass(frozen=True, slots=True)
class SaveCompletedEvent:
    session_id: str
    version: int


@dataclass(frozen=True, slots=True)
class SaveFailedEvent:
    session_id: str
    error: str


@dataclass(frozen=True, slots=True)
class VersionConflictEvent:
    session_id: str
    source: str


@dataclass(frozen=True, slots=True)
class GenerationStartedEvent:
    session_id: str
    mode: str


@dataclass(frozen=True, slots=True)
class GenerationDeltaEvent:
    session_id: str
    text: str


@dataclass(frozen=True, slots=True)
class GenerationFinishedEvent:
    session_id: str
    state: str
    generated_chars: int = 0
    error: str = ""


@dataclass(frozen=True, slots=True)
class BufferChangedEvent:
    session_id: str | None
    text: str


Event: TypeAlias = (
    NoticeEvent
    | SaveStartedEvent
    | SaveCompletedEvent
    | SaveFailedEvent
    | VersionConflictEvent
    | GenerationStartedEvent
    | GenerationDeltaEvent
    | GenerationFinishedEvent
    | BufferChangedEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)

    def notice(self, level: str, message: str, **kwargs) -> None:
        self.emit(NoticeEvent(level=level, message=message, **kwargs))
