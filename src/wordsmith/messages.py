"""Turn a flat writing buffer into chat messages.

The buffer may contain role markers from the active template (for example
``<|user|>`` ... ``<|end|>``). In chat mode those markers are parsed into an
ordered list of ``{"role", "content"}`` dicts; otherwise the whole buffer is
sent as a single user turn. Fill-in-the-middle prompts are built here as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from common.text_template import render_placeholders
from wordsmith.errors import ValidationError
from wordsmith.plan import FILL_PLACEHOLDER, PREDICT_PLACEHOLDER, GenerationPlan
from wordsmith.templates import NormalizedTemplate

logger = logging.getLogger(__name__)

PREDICT_SYSTEM_PROMPT = "Continue the text from the prompt. Respond with only the continuation."
FILL_SYSTEM_PROMPT = (
    "Fill in the missing text between the prefix and suffix. Respond with only the missing text."
)

_PREVIEW_CHARS = 40


@dataclass(slots=True)
class ExtractionResult:
    messages: list[dict] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    fallback: bool = False


def _match_marker(text: str, marker: str) -> int:
    """Length of the form of ``marker`` that ``text`` starts with, or 0.

    The buffer is trimmed before parsing, so a marker may lose its leading
    whitespace at the start of the text or its trailing whitespace when it
    is all that is left.
    """
    if not marker:
        return 0
    if text.startswith(marker):
        return len(marker)
    leading = marker.lstrip()
    if leading and leading != marker and text.startswith(leading):
        return len(leading)
    trailing = marker.rstrip()
    if trailing and trailing != marker and text == trailing:
        return len(trailing)
    return 0


def _find_next_boundary(text: str, markers: list[str]) -> int:
    earliest = -1
    for marker in markers:
        idx = text.find(marker)
        trailing = marker.rstrip()
        # a marker without its trailing whitespace only counts at the very end
        if idx == -1 and trailing and trailing != marker and text.endswith(trailing):
            idx = len(text) - len(trailing)
        if idx != -1 and (earliest == -1 or idx < earliest):
            earliest = idx
    return earliest


def _boundaries(template: NormalizedTemplate, role: str) -> list[str]:
    if role == "system":
        markers = [template.system_suffix, template.user_prefix, template.assistant_prefix]
    elif role == "user":
        markers = [
            template.user_suffix or template.assistant_prefix,
            template.assistant_prefix,
            template.system_prefix,
        ]
    else:
        markers = [
            template.assistant_suffix or template.user_prefix,
            template.user_prefix,
            template.system_prefix,
        ]
    return [m for m in markers if m]


def _extract_one(
    text: str, template: NormalizedTemplate, role: str
) -> tuple[dict, str] | None:
    matched = _match_marker(text, template.prefix_for(role))
    if not matched:
        return None
    rest = text[matched:]
    end = _find_next_boundary(rest, _boundaries(template, role))
    if end == -1:
        return {"role": role, "content": rest.strip()}, ""

    remaining = rest[end:]
    remaining = remaining[_match_marker(remaining, template.suffix_for(role)) :]
    return {"role": role, "content": rest[:end].strip()}, remaining


def _preview(span: str) -> str:
    flat = " ".join(span.split())
    if len(flat) > _PREVIEW_CHARS:
        return flat[:_PREVIEW_CHARS] + "..."
    return flat


def extract_messages(text: str, template: NormalizedTemplate) -> ExtractionResult:
    trimmed = text.strip()
    if not trimmed:
        return ExtractionResult()

    prefixes = template.prefixes
    if not prefixes or (
        _find_next_boundary(trimmed, prefixes) == -1
        and not any(_match_marker(trimmed, prefix) for prefix in prefixes)
    ):
        return ExtractionResult(messages=[{"role": "user", "content": trimmed}], fallback=True)

    result = ExtractionResult()
    remaining = trimmed
    while remaining:
        extracted = None
        for role in ("system", "user", "assistant"):
            extracted = _extract_one(remaining, template, role)
            if extracted is not None:
                break

        if extracted is None:
            next_index = _find_next_boundary(remaining, prefixes)
            span = remaining if next_index <= 0 else remaining[:next_index]
            if span.strip():
                result.discarded.append(span)
                logger.warning(
                    f"Skipping {len(span)} chars outside template markers: {_preview(span)!r}"
                )
            remaining = "" if next_index <= 0 else remaining[next_index:]
            continue

        message, remaining = extracted
        if message["content"]:
            result.messages.append(message)
        remaining = remaining.lstrip()

    if not result.messages:
        return ExtractionResult(
            messages=[{"role": "user", "content": trimmed}],
            discarded=result.discarded,
            fallback=True,
        )

    last = result.messages[-1]
    if last["role"] == "assistant" and not last["content"].strip():
        result.messages.pop()
    return result


def build_chat_messages(text: str, template: NormalizedTemplate, chat_mode: bool) -> list[dict]:
    trimmed = text.strip()
    if not trimmed:
        return []
    if not chat_mode:
        return [{"role": "user", "content": trimmed}]
    return extract_messages(trimmed, template).messages


def render_template_messages(messages: list[dict], template: NormalizedTemplate) -> str:
    parts = []
    for message in messages:
        role = message["role"]
        parts.append(template.prefix_for(role) + message["content"] + template.suffix_for(role))
    return "".join(parts)


def apply_fim_template(template: NormalizedTemplate, prefix: str, suffix: str) -> str | None:
    if not template.fim_template:
        return None
    return render_placeholders(template.fim_template, {"prefix": prefix, "suffix": suffix})


def build_fill_prompt(prefix: str, suffix: str) -> str:
    return "\n".join(
        [
            "Fill in the missing text between the prefix and suffix.",
            "",
            "Prefix:",
            prefix,
            "",
            "Suffix:",
            suffix,
            "",
            "Return only the missing text.",
        ]
    )


@dataclass(frozen=True, slots=True)
class PromptBuild:
    text: str
    used_fim_fallback: bool = False


def build_prompt(plan: GenerationPlan, template: NormalizedTemplate) -> PromptBuild:
    if plan.mode != "fill":
        return PromptBuild(text=plan.prefix)
    fim_prompt = apply_fim_template(template, plan.prefix, plan.suffix)
    if fim_prompt is None:
        logger.info(f"Template {template.name!r} has no FIM format; using generic fill prompt")
        return PromptBuild(text=build_fill_prompt(plan.prefix, plan.suffix), used_fim_fallback=True)
    return PromptBuild(text=fim_prompt)


def system_prompt_for(plan: GenerationPlan, chat_mode: bool) -> str | None:
    if chat_mode:
        return None
    return FILL_SYSTEM_PROMPT if plan.mode == "fill" else PREDICT_SYSTEM_PROMPT


def insert_placeholder(
    text: str, placeholder: str, start: int | None = None, end: int | None = None
) -> tuple[str, int]:
    if placeholder not in (PREDICT_PLACEHOLDER, FILL_PLACEHOLDER):
        raise ValidationError(f"Unknown placeholder: {placeholder}")
    start = len(text) if start is None else max(0, min(start, len(text)))
    end = start if end is None else max(start, min(end, len(text)))
    return text[:start] + placeholder + text[end:], start + len(placeholder)


def insert_template_block(
    text: str,
    template: NormalizedTemplate,
    role: str,
    start: int | None = None,
    end: int | None = None,
) -> tuple[str, int]:
    """Wrap the selection (or an empty span) in the role's markers."""
    prefix = template.prefix_for(role)
    suffix = template.suffix_for(role)
    if not prefix and not suffix:
        raise ValidationError(f"{role.capitalize()} markers missing in template.")
    start = len(text) if start is None else max(0, min(start, len(text)))
    end = start if end is None else max(start, min(end, len(text)))
    selected = text[start:end]
    new_text = text[:start] + prefix + selected + suffix + text[end:]
    return new_text, start + len(prefix) + len(selected)
