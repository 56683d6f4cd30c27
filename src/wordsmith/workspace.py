"""The writing workspace: one editor buffer bound to a server-side session.

``WritingWorkspace`` owns the buffer and the session-level editor state
(settings, template, theme, chat mode) and routes every change through the
save scheduler. It also hosts the generation engine, the search session and
the session/template/theme management calls.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from common.events import BufferChangedEvent, EventCallback, EventEmitter
from common.llm import LiteLLMBackend
from wordsmith import transfer
from wordsmith.config import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_MAX_CHUNKS,
    DEFAULT_MAX_MATCHES,
    WritingConfig,
)
from wordsmith.conflicts import ConflictHandler
from wordsmith.errors import ServerError, ValidationError, is_version_conflict
from wordsmith.generation import GenerationEngine, GenerationRequest, GenerationResult, TokenBackend
from wordsmith.history import HistoryTable
from wordsmith.messages import insert_placeholder, insert_template_block
from wordsmith.models import (
    GenerationSettings,
    SessionListItem,
    SessionSnapshot,
    TemplateRecord,
    ThemeRecord,
    WritingCapabilities,
    WritingSession,
    chat_mode_from_payload,
    new_session_payload,
    prompt_from_payload,
    template_name_from_payload,
    theme_name_from_payload,
)
from wordsmith.plan import ChunkSummary, split_prompt_chunks
from wordsmith.scheduler import SAVE_DEBOUNCE_S, SaveScheduler
from wordsmith.search import Match, SearchResult, SearchSession
from wordsmith.templates import (
    NormalizedTemplate,
    NormalizedTheme,
    ThemeForm,
    build_template_payload,
    effective_template,
    effective_theme,
    find_by_name,
    validate_record_name,
)
from wordsmith.usage import UsageStore

logger = logging.getLogger(__name__)


def format_saved_time(saved_at: float, now: float) -> str:
    elapsed = max(0.0, now - saved_at)
    if elapsed < 45:
        return "just now"
    if elapsed < 3600:
        return f"{int(elapsed // 60) or 1}m ago"
    if elapsed < 86400:
        return f"{int(elapsed // 3600)}h ago"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(saved_at))


class WritingWorkspace:
    def __init__(
        self,
        client,
        *,
        backend: TokenBackend | None = None,
        model: str | None = None,
        emitter: EventEmitter | None = None,
        on_event: EventCallback = None,
        debounce_s: float = SAVE_DEBOUNCE_S,
        max_matches: int = DEFAULT_MAX_MATCHES,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        list_limit: int = DEFAULT_LIST_LIMIT,
        usage_path: str | Path | None = None,
    ):
        self.client = client
        self.emitter = emitter or EventEmitter(on_event)
        self.model = model
        self.max_chunks = max_chunks
        self.list_limit = list_limit
        self.online = True

        self.scheduler = SaveScheduler(client, debounce_s=debounce_s, emitter=self.emitter)
        self.scheduler.on_saved = self._on_saved
        self.conflicts = ConflictHandler(
            client, self.scheduler, self.emitter, on_refresh=self._on_refresh
        )
        self.histories = HistoryTable()
        self.engine = GenerationEngine(
            backend or LiteLLMBackend(), self, self.emitter, self.histories
        )
        self.search = SearchSession(max_matches=max_matches)
        self.usage = UsageStore(usage_path)

        self.capabilities: WritingCapabilities | None = None
        self.sessions: list[SessionListItem] = []
        self.templates: list[TemplateRecord] = []
        self.themes: list[ThemeRecord] = []

        self.session: WritingSession | None = None
        self.text = ""
        self.settings = GenerationSettings()
        self.template_name: str | None = None
        self.theme_name: str | None = None
        self.chat_mode = False

    @classmethod
    def from_config(cls, config: WritingConfig, client, **kwargs) -> "WritingWorkspace":
        kwargs.setdefault("usage_path", config.usage_path)
        return cls(
            client,
            model=config.model,
            debounce_s=config.save_debounce_s,
            max_matches=config.max_matches,
            max_chunks=config.max_chunks,
            list_limit=config.list_limit,
            **kwargs,
        )

    # -- buffer host -----------------------------------------------------

    @property
    def active_session_id(self) -> str | None:
        return self.session.id if self.session is not None else None

    @property
    def chat_available(self) -> bool:
        return self.online

    def replace_text(self, text: str) -> None:
        self.text = text
        self.emitter.emit(BufferChangedEvent(session_id=self.active_session_id, text=text))
        self._commit()

    # -- editor state ----------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            prompt=self.text,
            settings=self.settings,
            template_name=self.template_name,
            theme_name=self.theme_name,
            chat_mode=self.chat_mode,
        )

    def _commit(self) -> None:
        if self.session is None:
            return
        snapshot = self.snapshot()
        if not self.scheduler.is_dirty(self.session.id, snapshot):
            self.scheduler.clear_pending_save(self.session.id)
            return
        self.scheduler.schedule_save(self.session.id, snapshot.merge_into(self.session.payload))

    def _load_buffer(self, payload: dict) -> None:
        self.text = prompt_from_payload(payload)
        self.settings = GenerationSettings.from_payload(payload)
        self.template_name = template_name_from_payload(payload)
        self.theme_name = theme_name_from_payload(payload)
        self.chat_mode = chat_mode_from_payload(payload)
        self.emitter.emit(BufferChangedEvent(session_id=self.active_session_id, text=self.text))

    def _reset_buffer(self) -> None:
        self.session = None
        self._load_buffer({})

    def set_prompt(self, text: str) -> None:
        self.replace_text(text)

    def update_settings(self, **changes: Any) -> GenerationSettings:
        merged = {**self.settings.model_dump(), **changes}
        self.settings = GenerationSettings.from_payload({"settings": merged})
        self._commit()
        return self.settings

    def set_template(self, name: str | None) -> None:
        self.template_name = name
        self._commit()

    def set_theme(self, name: str | None) -> None:
        self.theme_name = name
        self._commit()

    def set_chat_mode(self, enabled: bool) -> None:
        self.chat_mode = bool(enabled)
        self._commit()

    @property
    def template(self) -> NormalizedTemplate:
        return effective_template(self.templates, self.template_name)

    @property
    def theme(self) -> NormalizedTheme:
        return effective_theme(self.themes, self.theme_name)

    def insert_placeholder(self, placeholder: str, start: int | None = None, end: int | None = None) -> int:
        text, cursor = insert_placeholder(self.text, placeholder, start, end)
        self.replace_text(text)
        return cursor

    def insert_template_block(self, role: str, start: int | None = None, end: int | None = None) -> int:
        text, cursor = insert_template_block(self.text, self.template, role, start, end)
        self.replace_text(text)
        return cursor

    def prompt_chunks(self) -> ChunkSummary:
        return split_prompt_chunks(self.text, self.max_chunks)

    # -- save status -----------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        if self.session is None:
            return False
        return self.scheduler.is_dirty(self.session.id, self.snapshot())

    @property
    def last_saved_at(self) -> float | None:
        if self.session is None:
            return None
        return self.scheduler.last_saved_at(self.session.id)

    def save_status(self, now: float | None = None) -> str | None:
        if self.session is None:
            return None
        if self.engine.is_generating:
            return "Generating..."
        if self.scheduler.is_saving(self.session.id):
            return "Saving..."
        if self.is_dirty:
            return "Unsaved changes"
        saved_at = self.last_saved_at
        if saved_at is not None:
            return f"Saved {format_saved_time(saved_at, time.time() if now is None else now)}"
        return None

    async def flush(self) -> None:
        await self.scheduler.flush_now()

    # -- search ----------------------------------------------------------

    def find(
        self,
        query: str,
        *,
        match_case: bool | None = None,
        use_regex: bool | None = None,
    ) -> SearchResult:
        self.search.configure(query=query, match_case=match_case, use_regex=use_regex)
        return self.search.search(self.text)

    def navigate_match(self, direction: str) -> Match | None:
        return self.search.navigate(self.text, direction)

    def replace_current(self, replacement: str | None = None) -> int | None:
        if replacement is not None:
            self.search.replacement = replacement
        replaced = self.search.replace_current(self.text)
        if replaced is None:
            return None
        text, cursor = replaced
        self.replace_text(text)
        return cursor

    def replace_all(self, replacement: str | None = None) -> None:
        if replacement is not None:
            self.search.replacement = replacement
        if self.search.search(self.text).error:
            return
        self.replace_text(self.search.replace_all(self.text))

    # -- generation ------------------------------------------------------

    async def generate(self) -> GenerationResult | None:
        request = GenerationRequest(
            text=self.text,
            model=self.model,
            settings=self.settings,
            template=self.template,
            chat_mode=self.chat_mode,
        )
        return await self.engine.generate(request)

    def cancel_generation(self) -> bool:
        return self.engine.cancel()

    def undo(self) -> str | None:
        return self.engine.undo()

    def redo(self) -> str | None:
        return self.engine.redo()

    @property
    def can_undo(self) -> bool:
        return self.engine.can_undo

    @property
    def can_redo(self) -> bool:
        return self.engine.can_redo

    # -- capabilities ----------------------------------------------------

    async def refresh_capabilities(self) -> WritingCapabilities:
        try:
            self.capabilities = await self.client.get_capabilities()
        except ServerError as e:
            if e.status is None:
                logger.warning(f"Writing server unreachable: {e}")
                self.online = False
            raise
        self.online = True
        return self.capabilities

    def supports(self, feature: str) -> bool:
        if self.capabilities is None:
            return False
        return bool(getattr(self.capabilities.server, feature, False))

    @property
    def unsupported(self) -> bool:
        return self.capabilities is not None and not self.capabilities.server.sessions

    async def count_tokens(self, provider: str | None = None) -> int | None:
        if not self.supports("token_count") or not self.model:
            return None
        provider = provider or (self.capabilities.default_provider if self.capabilities else None)
        if not provider:
            return None
        return await self.client.count_tokens(provider, self.model, self.text)

    async def tokenize(
        self, provider: str | None = None, include_strings: bool = False
    ) -> dict | None:
        if not self.supports("tokenize") or not self.model:
            return None
        provider = provider or (self.capabilities.default_provider if self.capabilities else None)
        if not provider:
            return None
        return await self.client.tokenize(provider, self.model, self.text, include_strings)

    # -- sessions --------------------------------------------------------

    def _apply_session_list(self, sessions: list[SessionListItem]) -> None:
        self.sessions = sessions
        if self.session is not None and not any(item.id == self.session.id for item in sessions):
            logger.info(f"Active session {self.session.id} no longer exists on the server")
            self.histories.evict(self.session.id)
            self._reset_buffer()

    async def load_sessions(self) -> list[SessionListItem]:
        self._apply_session_list(await self.client.list_sessions(limit=self.list_limit))
        return self.sessions

    def sorted_sessions(self) -> list[SessionListItem]:
        return self.usage.sort(self.sessions)

    def _list_item(self, session_id: str) -> SessionListItem | None:
        for item in self.sessions:
            if item.id == session_id:
                return item
        return None

    def _known_version(self, session_id: str) -> int | None:
        item = self._list_item(session_id)
        if item is not None:
            return item.version
        return self.scheduler.confirmed_version(session_id)

    async def open_session(self, session_id: str) -> WritingSession | None:
        if self.engine.is_generating:
            self.emitter.notice("info", "Stop generation before switching sessions.")
            return None
        session = await self.client.get_session(session_id)
        previous = self.active_session_id
        if previous is not None and previous != session.id:
            self.engine.forget_session(previous)

        pending = self.scheduler.pending_payload(session.id)
        if not self.scheduler.is_blocked(session.id):
            self.scheduler.record_loaded(session)
        self.session = session
        self._load_buffer(pending if pending is not None else session.payload)
        self.search.active_index = 0
        self.usage.touch(session.id, session.name)
        logger.info(f"Opened session {session.id} ({session.name})")
        return session

    def close_session(self) -> bool:
        if self.session is None:
            return False
        if self.engine.is_generating:
            self.emitter.notice("info", "Stop generation before switching sessions.")
            return False
        self.engine.forget_session(self.session.id)
        self._reset_buffer()
        return True

    async def reload_from_server(self) -> WritingSession | None:
        if self.session is None:
            return None
        session = await self.conflicts.reload_from_server(self.session.id)
        self.session = session
        self._load_buffer(session.payload)
        return session

    async def create_session(self, name: str) -> WritingSession:
        name = validate_record_name(name, "session")
        session = await self.client.create_session(name, new_session_payload())
        self.emitter.notice("success", "Session created.", session_id=session.id)
        await self.load_sessions()
        await self.open_session(session.id)
        return session

    async def rename_session(self, session_id: str, name: str) -> WritingSession | None:
        name = validate_record_name(name, "session")
        version = self._known_version(session_id)
        if version is None:
            raise ValidationError(f"Unknown session: {session_id}")
        try:
            session = await self.client.update_session(session_id, {"name": name}, version)
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(session_id, e, source="rename")
                return None
            raise
        # a blocked session keeps its pre-conflict version until reloaded
        if (
            self.scheduler.confirmed_version(session_id) is not None
            and not self.scheduler.is_blocked(session_id)
        ):
            self.scheduler.record_loaded(session)
        if self.session is not None and self.session.id == session_id:
            self.session = session
        self.usage.rename(session_id, session.name)
        self.emitter.notice("success", "Session renamed.", session_id=session_id)
        await self.load_sessions()
        return session

    async def delete_session(self, session_id: str) -> bool:
        version = self._known_version(session_id)
        if version is None:
            raise ValidationError(f"Unknown session: {session_id}")
        try:
            await self.client.delete_session(session_id, version)
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(session_id, e, source="delete")
                return False
            raise
        self.scheduler.forget(session_id)
        self.usage.remove(session_id)
        if self.active_session_id == session_id:
            self.engine.forget_session(session_id)
            self._reset_buffer()
        self.emitter.notice("success", "Session deleted.", session_id=session_id)
        await self.load_sessions()
        return True

    async def clone_session(self, session_id: str, name: str | None = None) -> WritingSession:
        session = await self.client.clone_session(session_id, name)
        self.emitter.notice("success", "Session cloned.", session_id=session.id)
        await self.load_sessions()
        await self.open_session(session.id)
        return session

    def _on_saved(self, session: WritingSession) -> None:
        self.sessions = [
            item.model_copy(
                update={
                    "name": session.name,
                    "last_modified": session.last_modified,
                    "version": session.version,
                }
            )
            if item.id == session.id
            else item
            for item in self.sessions
        ]
        if self.session is not None and self.session.id == session.id:
            self.session = session

    def _on_refresh(
        self, session: WritingSession | None, sessions: list[SessionListItem] | None
    ) -> None:
        if sessions is not None:
            self._apply_session_list(sessions)
        if session is not None and self.session is not None and self.session.id == session.id:
            self.session = session

    # -- templates -------------------------------------------------------

    async def load_templates(self) -> list[TemplateRecord]:
        self.templates = await self.client.list_templates(limit=self.list_limit)
        return self.templates

    async def save_template(
        self,
        template: NormalizedTemplate,
        *,
        is_default: bool = False,
        editing: str | None = None,
    ) -> TemplateRecord | None:
        name = validate_record_name(template.name, "template")
        payload = build_template_payload(template)
        current = find_by_name(self.templates, editing)
        try:
            if current is not None:
                record = await self.client.update_template(
                    current.name,
                    {
                        "name": name,
                        "payload": payload,
                        "schema_version": current.schema_version,
                        "is_default": is_default,
                    },
                    current.version,
                )
            else:
                record = await self.client.create_template(name, payload, is_default=is_default)
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(self.active_session_id, e, source="template")
                return None
            raise
        await self.load_templates()
        if current is not None:
            self.emitter.notice("success", "Template saved.")
            if self.template_name == current.name:
                self.set_template(record.name)
        else:
            self.emitter.notice("success", "Template created.")
            if not self.template_name:
                self.set_template(record.name)
        return record

    async def delete_template(self, name: str) -> bool:
        current = find_by_name(self.templates, name)
        if current is None:
            raise ValidationError(f"Unknown template: {name}")
        try:
            await self.client.delete_template(current.name, current.version)
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(self.active_session_id, e, source="template")
                return False
            raise
        self.emitter.notice("success", "Template deleted.")
        await self.load_templates()
        if self.template_name == current.name:
            self.set_template(None)
        return True

    # -- themes ----------------------------------------------------------

    async def load_themes(self) -> list[ThemeRecord]:
        self.themes = await self.client.list_themes(limit=self.list_limit)
        return self.themes

    async def save_theme(self, form: ThemeForm, *, editing: str | None = None) -> ThemeRecord | None:
        name = validate_record_name(form.name, "theme")
        current = find_by_name(self.themes, editing)
        fields = {**form.to_fields(), "is_default": form.is_default}
        try:
            if current is not None:
                record = await self.client.update_theme(
                    current.name,
                    {"name": name, **fields, "schema_version": current.schema_version},
                    current.version,
                )
            else:
                record = await self.client.create_theme(name, {**fields, "schema_version": 1})
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(self.active_session_id, e, source="theme")
                return None
            raise
        await self.load_themes()
        if current is not None:
            self.emitter.notice("success", "Theme saved.")
            if self.theme_name == current.name:
                self.set_theme(record.name)
        else:
            self.emitter.notice("success", "Theme created.")
            if not self.theme_name:
                self.set_theme(record.name)
        return record

    async def delete_theme(self, name: str) -> bool:
        current = find_by_name(self.themes, name)
        if current is None:
            raise ValidationError(f"Unknown theme: {name}")
        try:
            await self.client.delete_theme(current.name, current.version)
        except ServerError as e:
            if is_version_conflict(e):
                await self.conflicts.handle(self.active_session_id, e, source="theme")
                return False
            raise
        self.emitter.notice("success", "Theme deleted.")
        await self.load_themes()
        if self.theme_name == current.name:
            self.set_theme(None)
        return True

    # -- import / export -------------------------------------------------

    async def export_session(self, session_id: str, path: str | Path) -> Path:
        session = await self.client.get_session(session_id)
        return transfer.write_document(path, transfer.session_document(session))

    async def import_sessions(self, path: str | Path) -> list[WritingSession]:
        document = transfer.read_document(path)
        created = await transfer.import_sessions(
            self.client, document, {item.name for item in self.sessions}
        )
        await self.load_sessions()
        self.emitter.notice("success", "Sessions imported.")
        return created

    def export_template(self, name: str, path: str | Path) -> Path:
        current = find_by_name(self.templates, name)
        if current is None:
            raise ValidationError(f"Unknown template: {name}")
        return transfer.write_document(path, transfer.template_document(current))

    async def import_templates(self, path: str | Path) -> list[TemplateRecord]:
        document = transfer.read_document(path)
        saved = await transfer.import_templates(self.client, document, self.templates)
        await self.load_templates()
        self.emitter.notice("success", "Templates imported.")
        return saved

    def export_theme(self, name: str, path: str | Path) -> Path:
        current = find_by_name(self.themes, name)
        if current is None:
            raise ValidationError(f"Unknown theme: {name}")
        return transfer.write_document(path, transfer.theme_document(current))

    async def import_themes(self, path: str | Path) -> list[ThemeRecord]:
        document = transfer.read_document(path)
        saved = await transfer.import_themes(self.client, document, self.themes)
        await self.load_themes()
        self.emitter.notice("success", "Themes imported.")
        return saved

    async def aclose(self, flush: bool = True) -> None:
        if flush:
            await self.scheduler.flush_now()
        self.scheduler.close()
