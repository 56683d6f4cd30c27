"""Streaming text generation into the editor buffer.

The engine resolves the generation plan for the current buffer, builds the
prompt and chat messages, streams tokens from the backend into the buffer and
records a per-session undo entry when it finishes. The buffer itself belongs
to a ``BufferHost`` (the workspace), which decides how text changes are saved.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Protocol

from common.events import (
    EventEmitter,
    GenerationDeltaEvent,
    GenerationFinishedEvent,
    GenerationStartedEvent,
)
from wordsmith.errors import is_abort_error
from wordsmith.history import HistoryTable
from wordsmith.messages import build_chat_messages, build_prompt, system_prompt_for
from wordsmith.models import GenerationSettings
from wordsmith.plan import resolve_generation_plan
from wordsmith.templates import DEFAULT_TEMPLATE, NormalizedTemplate

logger = logging.getLogger(__name__)


class GenerationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TokenBackend(Protocol):
    def stream(
        self,
        messages: list[dict],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        top_p: float | None = None,
        frequency_penalty: float | None = None,
        presence_penalty: float | None = None,
        system_prompt: str | None = None,
        extra_body: dict | None = None,
    ) -> AsyncIterator[str]: ...

    def cancel(self) -> None: ...


class BufferHost(Protocol):
    @property
    def active_session_id(self) -> str | None: ...

    @property
    def chat_available(self) -> bool: ...

    def replace_text(self, text: str) -> None: ...


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    text: str
    model: str | None
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    template: NormalizedTemplate = DEFAULT_TEMPLATE
    chat_mode: bool = False


@dataclass(frozen=True, slots=True)
class GenerationResult:
    state: GenerationState
    generated: str
    before: str
    after: str
    error: str | None = None


class GenerationEngine:
    def __init__(
        self,
        backend: TokenBackend,
        host: BufferHost,
        emitter: EventEmitter | None = None,
        histories: HistoryTable | None = None,
    ):
        self.backend = backend
        self.host = host
        self.emitter = emitter or EventEmitter()
        self.histories = histories if histories is not None else HistoryTable()
        self.state = GenerationState.IDLE
        self._cancelled = False
        self._session_id: str | None = None
        self._fim_notified: set[str] = set()

    @property
    def is_generating(self) -> bool:
        return self.state == GenerationState.GENERATING

    @property
    def session_id(self) -> str | None:
        """The session a running generation started in."""
        return self._session_id

    def _check_ready(self, request: GenerationRequest) -> str | None:
        session_id = self.host.active_session_id
        if session_id is None:
            self.emitter.notice("info", "Select a session to begin.")
            return None
        if not self.host.chat_available:
            self.emitter.notice("error", "Chat completions unavailable.", session_id=session_id)
            return None
        if not request.model:
            self.emitter.notice(
                "info", "Select a model in Settings to generate.", session_id=session_id
            )
            return None
        return session_id

    async def generate(self, request: GenerationRequest) -> GenerationResult | None:
        if self.is_generating:
            return None
        session_id = self._check_ready(request)
        if session_id is None:
            return None

        before = request.text
        plan = resolve_generation_plan(before)
        prompt = build_prompt(plan, request.template)
        if prompt.used_fim_fallback and session_id not in self._fim_notified:
            self._fim_notified.add(session_id)
            self.emitter.notice(
                "info",
                "Fill template missing; using a basic fill prompt.",
                session_id=session_id,
            )
        messages = build_chat_messages(prompt.text, request.template, request.chat_mode)
        settings = request.settings
        extra_body = settings.request_extras()

        self.state = GenerationState.GENERATING
        self._cancelled = False
        self._session_id = session_id
        self.emitter.emit(GenerationStartedEvent(session_id=session_id, mode=plan.mode))
        logger.info(f"Generating ({plan.mode}) for session {session_id} with {request.model}")
        if plan.placeholder:
            self.host.replace_text(plan.collapsed_text)

        generated = ""
        stream_error: BaseException | None = None
        interrupted = False
        try:
            stream = self.backend.stream(
                messages,
                model=request.model,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                top_p=settings.top_p,
                frequency_penalty=settings.frequency_penalty,
                presence_penalty=settings.presence_penalty,
                system_prompt=system_prompt_for(plan, request.chat_mode),
                extra_body=extra_body or None,
            )
            async with aclosing(stream) as tokens:
                async for token in tokens:
                    if self._cancelled:
                        break
                    generated += token
                    self.emitter.emit(GenerationDeltaEvent(session_id=session_id, text=token))
                    if self.host.active_session_id == session_id:
                        self.host.replace_text(plan.apply(generated))
        except asyncio.CancelledError as e:
            stream_error = e
            interrupted = True
        except Exception as e:
            stream_error = e

        after = plan.apply(generated) if generated else before
        result = self._finish(session_id, before, after, generated, stream_error)
        if interrupted:
            raise stream_error
        return result

    def _finish(
        self,
        session_id: str,
        before: str,
        after: str,
        generated: str,
        stream_error: BaseException | None,
    ) -> GenerationResult:
        aborted = self._cancelled or is_abort_error(stream_error)
        if self.host.active_session_id == session_id:
            self.host.replace_text(after)
            self.histories.get(session_id).push(before, after)

        self._session_id = None
        self._cancelled = False
        self.state = GenerationState.IDLE

        if aborted:
            state = GenerationState.CANCELLED
            error = None
            logger.info(f"Generation cancelled for session {session_id} after {len(generated)} chars")
        elif stream_error is not None:
            state = GenerationState.FAILED
            error = str(stream_error)
            logger.error(f"Generation failed for session {session_id}: {stream_error}")
            self.emitter.notice("error", f"Generation failed: {error}", session_id=session_id)
        else:
            state = GenerationState.COMPLETED
            error = None
            logger.info(f"Generated {len(generated)} chars for session {session_id}")

        self.emitter.emit(
            GenerationFinishedEvent(
                session_id=session_id,
                state=state.value,
                generated_chars=len(generated),
                error=error or "",
            )
        )
        return GenerationResult(state=state, generated=generated, before=before, after=after, error=error)

    def cancel(self) -> bool:
        if not self.is_generating:
            return False
        self._cancelled = True
        self.backend.cancel()
        return True

    def undo(self) -> str | None:
        if self.is_generating:
            return None
        session_id = self.host.active_session_id
        history = self.histories.peek(session_id)
        entry = history.undo() if history is not None else None
        if entry is None:
            return None
        self.host.replace_text(entry.before)
        return entry.before

    def redo(self) -> str | None:
        if self.is_generating:
            return None
        session_id = self.host.active_session_id
        history = self.histories.peek(session_id)
        entry = history.redo() if history is not None else None
        if entry is None:
            return None
        self.host.replace_text(entry.after)
        return entry.after

    @property
    def can_undo(self) -> bool:
        history = self.histories.peek(self.host.active_session_id)
        return history is not None and history.can_undo

    @property
    def can_redo(self) -> bool:
        history = self.histories.peek(self.host.active_session_id)
        return history is not None and history.can_redo

    def forget_session(self, session_id: str) -> None:
        self.histories.evict(session_id)
        self._fim_notified.discard(session_id)
