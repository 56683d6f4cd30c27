from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class GenerationHistoryEntry:
    before: str
    after: str


@dataclass
class GenerationHistory:
    undo_stack: List[GenerationHistoryEntry] = field(default_factory=list)
    redo_stack: List[GenerationHistoryEntry] = field(default_factory=list)

    def push(self, before: str, after: str) -> bool:
        if before == after:
            return False
        self.undo_stack.append(GenerationHistoryEntry(before=before, after=after))
        self.redo_stack = []
        return True

    def undo(self) -> Optional[GenerationHistoryEntry]:
        if not self.undo_stack:
            return None
        entry = self.undo_stack.pop()
        self.redo_stack.append(entry)
        return entry

    def redo(self) -> Optional[GenerationHistoryEntry]:
        if not self.redo_stack:
            return None
        entry = self.redo_stack.pop()
        self.undo_stack.append(entry)
        return entry

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    def clear(self):
        self.undo_stack = []
        self.redo_stack = []


class HistoryTable:
    """Undo/redo histories keyed by session id.

    A session's history lives only while the session is open; ``evict`` is
    called when the editor closes or switches away from it.
    """

    def __init__(self):
        self._histories: Dict[str, GenerationHistory] = {}

    def get(self, session_id: str) -> GenerationHistory:
        history = self._histories.get(session_id)
        if history is None:
            history = GenerationHistory()
            self._histories[session_id] = history
        return history

    def peek(self, session_id: Optional[str]) -> Optional[GenerationHistory]:
        if session_id is None:
            return None
        return self._histories.get(session_id)

    def evict(self, session_id: str):
        self._histories.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._histories

    def __len__(self) -> int:
        return len(self._histories)
