from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable

from wordsmith.errors import ValidationError
from wordsmith.models import TemplateRecord, ThemeRecord

SYSTEM_PREFIX_KEYS = ("sys_pre", "sysPre", "sys_prefix", "system_prefix", "systemPrefix")
SYSTEM_SUFFIX_KEYS = ("sys_suf", "sysSuf", "sys_suffix", "system_suffix", "systemSuffix")
USER_PREFIX_KEYS = (
    "inst_pre",
    "instPre",
    "user_prefix",
    "userPrefix",
    "instruction_prefix",
    "instructionPrefix",
)
USER_SUFFIX_KEYS = ("user_suffix", "userSuffix", "user_suf", "userSuf")
ASSISTANT_PREFIX_KEYS = (
    "inst_suf",
    "instSuf",
    "assistant_prefix",
    "assistantPrefix",
    "assistant_pre",
    "assistantPre",
)
ASSISTANT_SUFFIX_KEYS = ("assistant_suffix", "assistantSuffix", "assistant_suf", "assistantSuf")
FIM_TEMPLATE_KEYS = ("fim_template", "fimTemplate", "fim")

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True, slots=True)
class NormalizedTemplate:
    name: str = "default"
    system_prefix: str = ""
    system_suffix: str = ""
    user_prefix: str = ""
    user_suffix: str = ""
    assistant_prefix: str = ""
    assistant_suffix: str = ""
    fim_template: str | None = None

    def prefix_for(self, role: str) -> str:
        return getattr(self, f"{role}_prefix")

    def suffix_for(self, role: str) -> str:
        return getattr(self, f"{role}_suffix")

    @property
    def prefixes(self) -> list[str]:
        return [p for p in (self.system_prefix, self.user_prefix, self.assistant_prefix) if p]


DEFAULT_TEMPLATE = NormalizedTemplate()


def _string_value(payload: dict, keys: Iterable[str]) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def normalize_template_payload(name: str, payload: Any) -> NormalizedTemplate:
    if not isinstance(payload, dict):
        return replace(DEFAULT_TEMPLATE, name=name)
    return NormalizedTemplate(
        name=name,
        system_prefix=_string_value(payload, SYSTEM_PREFIX_KEYS),
        system_suffix=_string_value(payload, SYSTEM_SUFFIX_KEYS),
        user_prefix=_string_value(payload, USER_PREFIX_KEYS),
        user_suffix=_string_value(payload, USER_SUFFIX_KEYS),
        assistant_prefix=_string_value(payload, ASSISTANT_PREFIX_KEYS),
        assistant_suffix=_string_value(payload, ASSISTANT_SUFFIX_KEYS),
        fim_template=_string_value(payload, FIM_TEMPLATE_KEYS) or None,
    )


def normalize_template(template: TemplateRecord | None) -> NormalizedTemplate:
    if template is None or not isinstance(template.payload, dict):
        return DEFAULT_TEMPLATE
    return normalize_template_payload(template.name, template.payload)


def build_template_payload(template: NormalizedTemplate) -> dict[str, str]:
    """Serialize markers under the canonical short keys, skipping blanks."""
    fields = (
        ("sys_pre", template.system_prefix),
        ("sys_suf", template.system_suffix),
        ("inst_pre", template.user_prefix),
        ("user_suffix", template.user_suffix),
        ("inst_suf", template.assistant_prefix),
        ("assistant_suf", template.assistant_suffix),
        ("fim_template", template.fim_template or ""),
    )
    return {key: value for key, value in fields if value.strip()}


def pick_default(records: list[Any]) -> Any | None:
    for record in records:
        if record.is_default:
            return record
    return records[0] if records else None


def find_by_name(records: list[Any], name: str | None) -> Any | None:
    if not name:
        return None
    for record in records:
        if record.name == name:
            return record
    return None


def effective_template(
    templates: list[TemplateRecord], selected_name: str | None
) -> NormalizedTemplate:
    record = find_by_name(templates, selected_name) or pick_default(templates)
    return normalize_template(record)


def validate_record_name(name: str | None, kind: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"Enter a {kind} name.")
    return cleaned


@dataclass(frozen=True, slots=True)
class NormalizedTheme:
    name: str = "default"
    class_name: str = ""
    css: str = ""


DEFAULT_THEME = NormalizedTheme()


def normalize_theme(theme: ThemeRecord | None) -> NormalizedTheme:
    if theme is None:
        return DEFAULT_THEME
    return NormalizedTheme(
        name=theme.name,
        class_name=theme.class_name if isinstance(theme.class_name, str) else "",
        css=theme.css if isinstance(theme.css, str) else "",
    )


def effective_theme(themes: list[ThemeRecord], selected_name: str | None) -> NormalizedTheme:
    record = find_by_name(themes, selected_name) or pick_default(themes)
    return normalize_theme(record)


@dataclass(slots=True)
class ThemeForm:
    name: str = ""
    class_name: str = ""
    css: str = ""
    order: int = 0
    is_default: bool = False

    def to_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if self.class_name.strip():
            fields["class_name"] = self.class_name
        if self.css.strip():
            fields["css"] = self.css
        fields["order"] = int(self.order)
        return fields
