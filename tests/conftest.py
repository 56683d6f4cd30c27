import asyncio
import copy

import pytest

from common.events import EventEmitter
from wordsmith.errors import ServerError, VersionConflictError
from wordsmith.models import (
    ServerCapabilities,
    SessionListItem,
    TemplateRecord,
    ThemeRecord,
    WritingCapabilities,
    WritingSession,
)


class FakeWritingClient:
    """In-memory stand-in for the writing API with version preconditions."""

    def __init__(self):
        self.sessions: dict[str, WritingSession] = {}
        self.templates: dict[str, TemplateRecord] = {}
        self.themes: dict[str, ThemeRecord] = {}
        self.update_calls: list[tuple[str, dict, int]] = []
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self._next_id = 1

    def add_session(self, session_id: str, name: str = "Draft", payload: dict | None = None, version: int = 1):
        session = WritingSession(
            id=session_id,
            name=name,
            payload=payload or {},
            version=version,
            last_modified="2026-01-01T00:00:00Z",
        )
        self.sessions[session_id] = session
        return session

    def bump(self, session_id: str, **payload_changes):
        current = self.sessions[session_id]
        payload = {**current.payload, **payload_changes}
        self.sessions[session_id] = current.model_copy(
            update={"payload": payload, "version": current.version + 1}
        )
        return self.sessions[session_id]

    async def get_capabilities(self, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        return WritingCapabilities(
            server=ServerCapabilities(
                sessions=True, templates=True, themes=True, tokenize=True, token_count=True
            ),
            default_provider="openai",
        )

    async def count_tokens(self, provider, model, text):
        self.calls.append(("count_tokens", provider, model, text))
        return len(text.split())

    async def tokenize(self, provider, model, text, include_strings=False):
        self.calls.append(("tokenize", provider, model, text))
        tokens = text.split()
        result = {"count": len(tokens), "ids": list(range(len(tokens)))}
        if include_strings:
            result["strings"] = tokens
        return result

    async def list_sessions(self, limit=None, offset=None):
        self.calls.append(("list_sessions", limit))
        return [
            SessionListItem(
                id=s.id, name=s.name, last_modified=s.last_modified, version=s.version
            )
            for s in self.sessions.values()
        ]

    async def get_session(self, session_id):
        self.calls.append(("get_session", session_id))
        if session_id not in self.sessions:
            raise ServerError("Session not found", status=404)
        return self.sessions[session_id].model_copy(deep=True)

    async def create_session(self, name, payload, schema_version=1):
        self.calls.append(("create_session", name))
        session_id = f"new-{self._next_id}"
        self._next_id += 1
        session = WritingSession(
            id=session_id,
            name=name,
            payload=copy.deepcopy(payload),
            schema_version=schema_version,
            version=1,
        )
        self.sessions[session_id] = session
        return session.model_copy(deep=True)

    async def update_session(self, session_id, fields, expected_version):
        self.update_calls.append((session_id, copy.deepcopy(fields), expected_version))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        current = self.sessions[session_id]
        if expected_version != current.version:
            raise VersionConflictError("Version mismatch", current_version=current.version)
        updated = current.model_copy(
            update={**copy.deepcopy(fields), "version": current.version + 1}
        )
        self.sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def delete_session(self, session_id, expected_version):
        self.calls.append(("delete_session", session_id, expected_version))
        current = self.sessions[session_id]
        if expected_version != current.version:
            raise VersionConflictError("Version mismatch", current_version=current.version)
        del self.sessions[session_id]

    async def clone_session(self, session_id, name=None):
        source = self.sessions[session_id]
        return await self.create_session(name or f"{source.name} (copy)", source.payload)

    async def list_templates(self, limit=None, offset=None):
        return list(self.templates.values())

    async def create_template(self, name, payload, schema_version=1, is_default=False):
        self.calls.append(("create_template", name))
        record = TemplateRecord(
            id=len(self.templates) + 1,
            name=name,
            payload=copy.deepcopy(payload),
            schema_version=schema_version,
            is_default=is_default,
        )
        self.templates[name] = record
        return record

    async def update_template(self, name, fields, expected_version):
        self.calls.append(("update_template", name, expected_version))
        current = self.templates[name]
        if expected_version != current.version:
            raise VersionConflictError("Version mismatch")
        updated = current.model_copy(update={**fields, "version": current.version + 1})
        del self.templates[name]
        self.templates[updated.name] = updated
        return updated

    async def delete_template(self, name, expected_version):
        self.calls.append(("delete_template", name, expected_version))
        current = self.templates[name]
        if expected_version != current.version:
            raise VersionConflictError("Version mismatch")
        del self.templates[name]

    async def list_themes(self, limit=None, offset=None):
        return list(self.themes.values())

    async def create_theme(self, name, fields):
        self.calls.append(("create_theme", name))
        record = ThemeRecord(name=name, **{k: v for k, v in fields.items() if v is not None})
        self.themes[name] = record
        return record

    async def update_theme(self, name, fields, expected_version):
        self.calls.append(("update_theme", name, expected_version))
        current = self.themes[name]
        if expected_version != current.version:
            raise VersionConflictError("Version mismatch")
        updated = current.model_copy(update={**fields, "version": current.version + 1})
        del self.themes[name]
        self.themes[updated.name] = updated
        return updated

    async def delete_theme(self, name, expected_version):
        self.calls.append(("delete_theme", name, expected_version))
        del self.themes[name]


class FakeBackend:
    """Token stream that yields a fixed list, optionally failing at the end."""

    def __init__(self, tokens=(), error: Exception | None = None):
        self.tokens = list(tokens)
        self.error = error
        self.calls: list[dict] = []
        self.cancelled = False

    async def stream(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        self.cancelled = False
        for token in self.tokens:
            await asyncio.sleep(0)
            if self.cancelled:
                return
            yield token
        if self.error is not None:
            raise self.error

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def fake_client():
    return FakeWritingClient()


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def events():
    return []


@pytest.fixture
def emitter(events):
    return EventEmitter(events.append)
