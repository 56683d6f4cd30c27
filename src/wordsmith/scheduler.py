"""Debounced, single-flight saving of writing sessions.

Edits are coalesced per session in an insertion-ordered map. After a quiet
period the scheduler writes the oldest pending session, using the last version
the server confirmed as the ``expected-version`` precondition. Only one write
is in flight at a time across all sessions.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable

from common.events import (
    EventEmitter,
    SaveCompletedEvent,
    SaveFailedEvent,
    SaveStartedEvent,
)
from wordsmith.errors import ServerError, is_version_conflict
from wordsmith.models import SessionSnapshot, WritingSession
from wordsmith.timer import DebounceTimer

logger = logging.getLogger(__name__)

SAVE_DEBOUNCE_S = 0.8


class SaveScheduler:
    def __init__(
        self,
        client,
        *,
        debounce_s: float = SAVE_DEBOUNCE_S,
        emitter: EventEmitter | None = None,
    ):
        self.client = client
        self.emitter = emitter or EventEmitter()
        self.conflict_handler = None
        self.on_saved: Callable[[WritingSession], None] | None = None
        self._pending: OrderedDict[str, dict] = OrderedDict()
        self._in_flight = False
        self._saving_session_id: str | None = None
        self._versions: dict[str, int] = {}
        self._schema_versions: dict[str, int] = {}
        self._last_saved: dict[str, SessionSnapshot] = {}
        self._last_saved_at: dict[str, float] = {}
        self._blocked: set[str] = set()
        self._timer = DebounceTimer(debounce_s, self.flush_next)

    # -- confirmed server state -------------------------------------------

    def record_loaded(self, session: WritingSession) -> None:
        self._versions[session.id] = session.version
        self._schema_versions[session.id] = session.schema_version
        self._last_saved[session.id] = session.snapshot()
        self._last_saved_at[session.id] = time.time()
        self._blocked.discard(session.id)

    def forget(self, session_id: str) -> None:
        self.clear_pending_save(session_id)
        self._versions.pop(session_id, None)
        self._schema_versions.pop(session_id, None)
        self._last_saved.pop(session_id, None)
        self._last_saved_at.pop(session_id, None)
        self._blocked.discard(session_id)

    def confirmed_version(self, session_id: str) -> int | None:
        return self._versions.get(session_id)

    def last_saved(self, session_id: str) -> SessionSnapshot:
        return self._last_saved.get(session_id) or SessionSnapshot()

    def last_saved_at(self, session_id: str) -> float | None:
        return self._last_saved_at.get(session_id)

    def is_dirty(self, session_id: str, snapshot: SessionSnapshot) -> bool:
        return snapshot != self.last_saved(session_id)

    # -- conflict blocking ------------------------------------------------

    def block(self, session_id: str) -> None:
        self._blocked.add(session_id)

    def is_blocked(self, session_id: str) -> bool:
        return session_id in self._blocked

    # -- queue ------------------------------------------------------------

    def schedule_save(self, session_id: str, payload: dict) -> None:
        self._pending[session_id] = payload
        if session_id == self._saving_session_id:
            # the in-flight write carries an older payload; requeue behind others
            self._pending.move_to_end(session_id)
        self._timer.reset()

    def clear_pending_save(self, session_id: str) -> None:
        self._pending.pop(session_id, None)
        if not self._pending:
            self._timer.cancel()

    def pending_payload(self, session_id: str) -> dict | None:
        return self._pending.get(session_id)

    def has_pending(self, session_id: str | None = None) -> bool:
        if session_id is None:
            return bool(self._pending)
        return session_id in self._pending

    def is_saving(self, session_id: str | None = None) -> bool:
        if session_id is None:
            return self._in_flight
        return self._in_flight and self._saving_session_id == session_id

    @property
    def timer_pending(self) -> bool:
        return self._timer.pending

    def _next_ready(self, exclude: str | None = None) -> str | None:
        for session_id in list(self._pending):
            if session_id in self._blocked or session_id == exclude:
                continue
            if session_id not in self._versions:
                logger.warning(f"Dropping pending save for {session_id}: no confirmed version")
                del self._pending[session_id]
                continue
            return session_id
        return None

    async def flush_next(self) -> None:
        if self._in_flight:
            return
        while True:
            session_id = self._next_ready()
            if session_id is None:
                return
            saved = await self._save(session_id)
            if not saved:
                if self._next_ready(exclude=session_id) is not None:
                    self._timer.reset()
                return

    async def flush_now(self) -> None:
        self._timer.cancel()
        await self.flush_next()
        await self._timer.drain()

    async def _save(self, session_id: str) -> bool:
        payload = self._pending[session_id]
        expected_version = self._versions[session_id]
        fields = {
            "payload": payload,
            "schema_version": self._schema_versions.get(session_id, 1),
        }

        self._in_flight = True
        self._saving_session_id = session_id
        self.emitter.emit(SaveStartedEvent(session_id=session_id, expected_version=expected_version))
        logger.debug(f"Saving session {session_id} at version {expected_version}")
        try:
            session = await self.client.update_session(session_id, fields, expected_version)
        except ServerError as e:
            if is_version_conflict(e):
                await self._on_conflict(session_id, e)
                return False
            logger.error(f"Failed to save session {session_id}: {e}")
            if session_id in self._pending:
                # retry after the other queued sessions
                self._pending.move_to_end(session_id)
            self.emitter.emit(SaveFailedEvent(session_id=session_id, error=str(e)))
            self.emitter.notice(
                "error", f"Failed to save session: {e}", session_id=session_id
            )
            return False
        finally:
            self._in_flight = False
            self._saving_session_id = None

        self._record_saved(session, payload)
        return True

    def _record_saved(self, session: WritingSession, sent_payload: dict) -> None:
        self._versions[session.id] = session.version
        self._schema_versions[session.id] = session.schema_version
        self._last_saved[session.id] = session.snapshot()
        self._last_saved_at[session.id] = time.time()
        if self._pending.get(session.id) is sent_payload:
            del self._pending[session.id]
        logger.info(f"Saved session {session.id} (version {session.version})")
        self.emitter.emit(SaveCompletedEvent(session_id=session.id, version=session.version))
        if self.on_saved is not None:
            self.on_saved(session)

    async def _on_conflict(self, session_id: str, error: ServerError) -> None:
        logger.warning(f"Version conflict saving session {session_id}: {error}")
        self.block(session_id)
        if self.conflict_handler is not None:
            await self.conflict_handler.handle(session_id, error, source="save")
        else:
            self.emitter.notice(
                "error", "Session changed on the server.", session_id=session_id, role="alert"
            )

    def close(self) -> None:
        self._timer.cancel()
