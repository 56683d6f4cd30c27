from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

MAX_MATCHES = 500


@dataclass(frozen=True, slots=True)
class Match:
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class SearchResult:
    matches: list[Match] = field(default_factory=list)
    error: str | None = None


def build_regex(pattern: str, match_case: bool) -> re.Pattern[str]:
    return re.compile(pattern, 0 if match_case else re.IGNORECASE)


def _plain_matches(text: str, query: str, match_case: bool, max_matches: int) -> list[Match]:
    source = text if match_case else text.lower()
    needle = query if match_case else query.lower()
    matches: list[Match] = []
    idx = 0
    while needle:
        idx = source.find(needle, idx)
        if idx == -1:
            break
        matches.append(Match(start=idx, end=idx + len(needle)))
        idx += len(needle) or 1
        if len(matches) >= max_matches:
            break
    return matches


def _regex_matches(text: str, regex: re.Pattern[str], max_matches: int) -> list[Match]:
    matches: list[Match] = []
    pos = 0
    while pos <= len(text):
        found = regex.search(text, pos)
        if found is None:
            break
        matches.append(Match(start=found.start(), end=found.end()))
        if len(matches) >= max_matches:
            break
        pos = found.end() if found.end() > found.start() else found.start() + 1
    return matches


def find_matches(
    text: str,
    query: str,
    *,
    match_case: bool = False,
    use_regex: bool = False,
    max_matches: int = MAX_MATCHES,
) -> SearchResult:
    if not query.strip():
        return SearchResult()
    if use_regex:
        try:
            regex = build_regex(query, match_case)
        except re.error as e:
            return SearchResult(error=f"Invalid regular expression: {e}")
        return SearchResult(matches=_regex_matches(text, regex, max_matches))
    return SearchResult(matches=_plain_matches(text, query, match_case, max_matches))


def replace_all(
    text: str,
    query: str,
    replacement: str,
    *,
    match_case: bool = False,
    use_regex: bool = False,
) -> str:
    """Replace every occurrence in a single left-to-right pass.

    Raises ``re.error`` for an invalid pattern or replacement template.
    """
    if not query.strip():
        return text
    if use_regex:
        return build_regex(query, match_case).sub(replacement, text)

    source = text if match_case else text.lower()
    needle = query if match_case else query.lower()
    parts: list[str] = []
    idx = 0
    while idx < len(text):
        found = source.find(needle, idx)
        if found == -1:
            break
        parts.append(text[idx:found])
        parts.append(replacement)
        idx = found + len(needle)
    parts.append(text[idx:])
    return "".join(parts)


@dataclass(slots=True)
class SearchSession:
    """Search/replace state for one editor buffer."""

    query: str = ""
    replacement: str = ""
    match_case: bool = False
    use_regex: bool = False
    max_matches: int = MAX_MATCHES
    active_index: int = 0

    def configure(
        self,
        *,
        query: str | None = None,
        match_case: bool | None = None,
        use_regex: bool | None = None,
    ) -> None:
        changed = False
        if query is not None and query != self.query:
            self.query = query
            changed = True
        if match_case is not None and match_case != self.match_case:
            self.match_case = match_case
            changed = True
        if use_regex is not None and use_regex != self.use_regex:
            self.use_regex = use_regex
            changed = True
        if changed:
            self.active_index = 0

    def search(self, text: str) -> SearchResult:
        result = find_matches(
            text,
            self.query,
            match_case=self.match_case,
            use_regex=self.use_regex,
            max_matches=self.max_matches,
        )
        if self.active_index >= len(result.matches):
            self.active_index = 0
        return result

    def navigate(self, text: str, direction: Literal["next", "prev"]) -> Match | None:
        matches = self.search(text).matches
        if not matches:
            return None
        step = 1 if direction == "next" else -1
        self.active_index = (self.active_index + step) % len(matches)
        return matches[self.active_index]

    def replace_current(self, text: str) -> tuple[str, int] | None:
        matches = self.search(text).matches
        if not matches:
            return None
        match = matches[self.active_index]
        replacement = self.replacement
        if self.use_regex:
            matched_text = text[match.start : match.end]
            replacement = build_regex(self.query, self.match_case).sub(
                self.replacement, matched_text, count=1
            )
        new_text = text[: match.start] + replacement + text[match.end :]
        return new_text, match.start + len(replacement)

    def replace_all(self, text: str) -> str:
        return replace_all(
            text,
            self.query,
            self.replacement,
            match_case=self.match_case,
            use_regex=self.use_regex,
        )
