from __future__ import annotations

import logging
from typing import Callable

from common.events import EventEmitter, VersionConflictEvent
from wordsmith.errors import ServerError
from wordsmith.models import SessionListItem, WritingSession

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Session changed on the server."
RELOAD_ACTION = "reload"
RELOAD_LABEL = "Reload from server"

# conflicts raised by writes to the session record itself
SESSION_SOURCES = ("save", "rename", "delete")

RefreshCallback = Callable[[WritingSession | None, list[SessionListItem] | None], None]


class ConflictHandler:
    """Reacts to a rejected ``expected-version`` precondition.

    The affected session stops saving until it is reloaded, the cached server
    copies are refreshed, and an alert notice offers a reload. Local edits are
    left untouched.
    """

    def __init__(
        self,
        client,
        scheduler,
        emitter: EventEmitter | None = None,
        on_refresh: RefreshCallback | None = None,
    ):
        self.client = client
        self.scheduler = scheduler
        self.emitter = emitter or EventEmitter()
        self.on_refresh = on_refresh
        scheduler.conflict_handler = self

    async def handle(
        self,
        session_id: str | None,
        error: ServerError | None = None,
        *,
        source: str = "save",
    ) -> None:
        logger.warning(f"Version conflict ({source}) for session {session_id}: {error}")
        if session_id is not None and source in SESSION_SOURCES:
            self.scheduler.block(session_id)
        if session_id is not None:
            self.emitter.emit(VersionConflictEvent(session_id=session_id, source=source))
        self.emitter.notice(
            "error",
            CONFLICT_MESSAGE,
            session_id=session_id,
            action=RELOAD_ACTION,
            action_label=RELOAD_LABEL,
            role="alert",
        )
        await self.refresh(session_id)

    async def refresh(self, session_id: str | None) -> None:
        session = None
        try:
            if session_id is not None:
                session = await self.client.get_session(session_id)
            sessions = await self.client.list_sessions()
        except ServerError as e:
            logger.warning(f"Could not refresh sessions after conflict: {e}")
            return
        if self.on_refresh is not None:
            self.on_refresh(session, sessions)

    async def reload_from_server(self, session_id: str) -> WritingSession:
        session = await self.client.get_session(session_id)
        self.scheduler.clear_pending_save(session_id)
        self.scheduler.record_loaded(session)
        logger.info(f"Reloaded session {session_id} at version {session.version}")
        return session
