import re

_PLACEHOLDER_PATTERNS: dict[str, re.Pattern[str]] = {}


def _placeholder_pattern(name: str) -> re.Pattern[str]:
    pattern = _PLACEHOLDER_PATTERNS.get(name)
    if pattern is None:
        pattern = re.compile(r"\{\{?\s*" + re.escape(name) + r"\s*\}?\}", re.IGNORECASE)
        _PLACEHOLDER_PATTERNS[name] = pattern
    return pattern


def render_placeholders(text: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` / ``{{ name }}`` placeholders, case-insensitively.

    Values are inserted literally; backslashes or group references inside them
    are never interpreted.
    """
    rendered = text
    for name, value in values.items():
        rendered = _placeholder_pattern(name).sub(lambda _m, v=value: v, rendered)
    return rendered
