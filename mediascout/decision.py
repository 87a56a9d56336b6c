"""
Render decision engine.

Classifies a static HTML response as sufficient for media extraction or as
needing a full dynamic render in a headless browser. The check is a
heuristic: when in doubt it asks for a render, since a needless render only
costs time while a missed one silently loses media.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern

MIN_HTML_LENGTH = 5000

_MEDIA_TAG_RE = re.compile(r"<(img|video)\b", re.IGNORECASE)


@dataclass(frozen=True)
class CsrRule:
    """A named client-side-rendering fingerprint matched against raw HTML."""

    name: str
    pattern: Pattern[str]

    def matches(self, html: str) -> bool:
        return self.pattern.search(html) is not None


def _rule(name: str, regex: str) -> CsrRule:
    return CsrRule(name=name, pattern=re.compile(regex))


DEFAULT_CSR_RULES: List[CsrRule] = [
    _rule("root_container", r"""\b(?:id|class)=["'](?:root|app|__next)["']"""),
    _rule("angular_version", r"\bng-version\b"),
    _rule("react_root", r"\bdata-reactroot\b"),
    _rule("next_data", r"__NEXT_DATA__"),
    _rule("nuxt_state", r"window\.__NUXT__"),
    _rule("angularjs_app", r"\bng-app\b"),
    _rule("vue_app", r"\bdata-v-app\b"),
]


def has_media_tags(html: str) -> bool:
    return _MEDIA_TAG_RE.search(html) is not None


class RenderDecisionEngine:
    """Decides whether a URL needs a dynamic render based on its static HTML."""

    def __init__(self, min_length: int = MIN_HTML_LENGTH, rules: Optional[Iterable[CsrRule]] = None) -> None:
        self._min_length = min_length
        self._rules = list(DEFAULT_CSR_RULES if rules is None else rules)

    @property
    def rules(self) -> List[CsrRule]:
        return list(self._rules)

    def add_rule(self, rule: CsrRule) -> None:
        self._rules.append(rule)

    def matched_rules(self, html: str) -> List[str]:
        return [r.name for r in self._rules if r.matches(html)]

    def reason(self, html: Optional[str]) -> Optional[str]:
        """Return why a dynamic render is needed, or None if static HTML suffices."""
        if not html:
            return "no_html"
        has_media = has_media_tags(html)
        if not has_media and len(html) < self._min_length:
            return "short_without_media"
        matched = self.matched_rules(html)
        if matched:
            return f"csr_fingerprint:{matched[0]}"
        if not has_media:
            return "no_media_tags"
        return None

    def needs_dynamic_render(self, html: Optional[str]) -> bool:
        return self.reason(html) is not None


def needs_dynamic_render(html: Optional[str], min_length: int = MIN_HTML_LENGTH) -> bool:
    """Module-level shortcut using the default rule set."""
    return RenderDecisionEngine(min_length=min_length).needs_dynamic_render(html)
