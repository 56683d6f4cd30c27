from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PREDICT_PLACEHOLDER = "{predict}"
FILL_PLACEHOLDER = "{fill}"

GenerationMode = Literal["append", "predict", "fill"]


@dataclass(frozen=True, slots=True)
class GenerationPlan:
    mode: GenerationMode
    placeholder: str | None
    prefix: str
    suffix: str

    @property
    def collapsed_text(self) -> str:
        return self.prefix + self.suffix

    def apply(self, generated: str) -> str:
        return self.prefix + generated + self.suffix


def resolve_generation_plan(text: str) -> GenerationPlan:
    predict_index = text.find(PREDICT_PLACEHOLDER)
    fill_index = text.find(FILL_PLACEHOLDER)
    if predict_index == -1 and fill_index == -1:
        return GenerationPlan(mode="append", placeholder=None, prefix=text, suffix="")

    use_predict = predict_index != -1 and (fill_index == -1 or predict_index <= fill_index)
    placeholder = PREDICT_PLACEHOLDER if use_predict else FILL_PLACEHOLDER
    index = predict_index if use_predict else fill_index
    return GenerationPlan(
        mode="predict" if use_predict else "fill",
        placeholder=placeholder,
        prefix=text[:index],
        suffix=text[index + len(placeholder) :],
    )


@dataclass(frozen=True, slots=True)
class PromptChunk:
    kind: Literal["text", "placeholder"]
    label: str


@dataclass(frozen=True, slots=True)
class ChunkSummary:
    chunks: list[PromptChunk]
    total: int
    truncated: bool


def split_prompt_chunks(text: str, max_chunks: int = 80) -> ChunkSummary:
    if not text:
        return ChunkSummary(chunks=[], total=0, truncated=False)
    parts: list[PromptChunk] = []
    pos = 0
    while pos < len(text):
        candidates = [
            (idx, marker)
            for marker in (PREDICT_PLACEHOLDER, FILL_PLACEHOLDER)
            if (idx := text.find(marker, pos)) != -1
        ]
        if not candidates:
            parts.append(PromptChunk(kind="text", label=text[pos:]))
            break
        idx, marker = min(candidates)
        if idx > pos:
            parts.append(PromptChunk(kind="text", label=text[pos:idx]))
        parts.append(PromptChunk(kind="placeholder", label=marker))
        pos = idx + len(marker)
    return ChunkSummary(
        chunks=parts[:max_chunks],
        total=len(parts),
        truncated=len(parts) > max_chunks,
    )
