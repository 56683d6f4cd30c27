import time
from pathlib import Path
from typing import Callable

from pydantic import BaseModel

from common.jsonio import atomic_write_json, load_json
from wordsmith.models import SessionListItem


class SessionUsage(BaseModel):
    name: str
    last_used_at: float = 0.0


class UsageStore:
    """Last-used timestamps per session, optionally persisted to a JSON file."""

    def __init__(self, path: str | Path | None = None, clock: Callable[[], float] = time.time):
        self.path = Path(path) if path is not None else None
        self.clock = clock
        self.entries: dict[str, SessionUsage] = {}
        if self.path is not None:
            data = load_json(self.path)
            if isinstance(data, dict):
                for session_id, raw in data.items():
                    if isinstance(raw, dict):
                        self.entries[session_id] = SessionUsage.model_validate(raw)

    def touch(self, session_id: str, name: str) -> None:
        self.entries[session_id] = SessionUsage(name=name, last_used_at=self.clock())
        self._save()

    def rename(self, session_id: str, name: str) -> None:
        entry = self.entries.get(session_id)
        if entry is None:
            return
        self.entries[session_id] = entry.model_copy(update={"name": name})
        self._save()

    def remove(self, session_id: str) -> None:
        if self.entries.pop(session_id, None) is not None:
            self._save()

    def last_used_at(self, session_id: str) -> float:
        entry = self.entries.get(session_id)
        return entry.last_used_at if entry else 0.0

    def sort(self, sessions: list[SessionListItem]) -> list[SessionListItem]:
        # sorted() is stable, so ties keep the server's order
        return sorted(sessions, key=lambda item: -self.last_used_at(item.id))

    def _save(self) -> None:
        if self.path is None:
            return
        atomic_write_json(
            self.path, {key: entry.model_dump() for key, entry in self.entries.items()}
        )
