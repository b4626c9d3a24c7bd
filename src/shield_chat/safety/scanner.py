"""Rule-based sanitizer and risk scorer for outbound user text."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field

from shield_chat.config import ScannerConfig
from shield_chat.types import ScanResult

_BIDI_AND_ZERO_WIDTH = re.compile(
    "[\u202a-\u202e\u2066-\u2069\u200e\u200f\u061c\u200b-\u200d\ufeff]"
)
_NULLS = re.compile("\x00")

_DANGEROUS_PROTOCOLS = re.compile(r"\b(?:javascript|vbscript|file|data):", re.IGNORECASE)
_TAGS = re.compile(r"</?([a-z][a-z0-9]*)\b[^>]*>", re.IGNORECASE)
_ON_ATTR = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_CSS_URL = re.compile(r"""url\(\s*(['"]?)(.*?)\1\s*\)""", re.IGNORECASE)
_IMPORT_AT_RULE = re.compile(r"""@import\s+['"]?[^'"\s;]+['"]?""", re.IGNORECASE)
_REPEATS = re.compile(r"(\S)\1{2,}")

_LINKS = re.compile(r"\bhttps?://")
_ANGLES = re.compile(r"[<>]")

_PLACEHOLDER_URL = "url(about:blank)"
_PLACEHOLDER_SCHEME = "about:blank:"

RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("script_open", re.compile(r"<script", re.IGNORECASE)),
    ("script_close", re.compile(r"</script", re.IGNORECASE)),
    ("iframe_tag", re.compile(r"<iframe", re.IGNORECASE)),
    ("object_tag", re.compile(r"<object", re.IGNORECASE)),
    ("embed_tag", re.compile(r"<embed", re.IGNORECASE)),
    ("svg_tag", re.compile(r"<svg", re.IGNORECASE)),
    ("xlink_href", re.compile(r"xlink:href", re.IGNORECASE)),
    ("onerror_handler", re.compile(r"onerror\s*=", re.IGNORECASE)),
    ("onload_handler", re.compile(r"onload\s*=", re.IGNORECASE)),
    ("path_traversal", re.compile(r"\.\./")),
    (
        "sql_keywords",
        re.compile(r"\b(select|union|insert|update|delete|drop)\b.*\bfrom\b", re.IGNORECASE),
    ),
    ("external_url", re.compile(r"\b(?:https?|ftp)://\S{2,}", re.IGNORECASE)),
)


@dataclass(slots=True)
class ClientCheck:
    """Result of the pre-send check shown to the user."""

    ok: bool
    sanitized: str = ""
    reasons: list[str] = field(default_factory=list)


class ContentSafetyScanner:
    """Sanitizes text into an inert form and scores it for injection risk.

    Sanitization pipeline, in order:
    1. NFKC normalization (pass-through when normalization is not possible).
    2. Strip bidi controls, zero-width characters and NUL bytes.
    3. Truncate to `max_length`.
    4. Remove inline handlers, tags and `@import` rules; neutralize `url(...)`
       and scheme-prefixed references to `javascript:`, `vbscript:`, `file:`
       and `data:`.
    5. Escape remaining angle brackets.
    6. Collapse runs of 3+ identical non-whitespace characters to 2.

    Risk is scored on the original text, so a payload cannot lower its own
    score by relying on the sanitizer. `scan` never raises.
    """

    def __init__(self, config: ScannerConfig | None = None) -> None:
        self.config = config or ScannerConfig()

    def scan(
        self,
        text: object,
        max_length: int | None = None,
        risk_threshold: int | None = None,
    ) -> ScanResult:
        raw = _coerce(text)
        threshold = risk_threshold if risk_threshold is not None else self.config.risk_threshold
        sanitized = self.sanitize(raw, max_length)
        score, hits = self.risk_score(raw)
        return ScanResult(
            accepted=score < threshold,
            sanitized=sanitized,
            risk_score=score,
            triggered_rules=hits,
        )

    def sanitize(self, text: object, max_length: int | None = None) -> str:
        limit = max_length if max_length is not None else self.config.max_length
        value = _normalize(_coerce(text))
        value = _NULLS.sub("", _BIDI_AND_ZERO_WIDTH.sub("", value))
        if len(value) > limit:
            value = value[:limit]
        value = _escape_angles(_scrub_markup(value))
        return _REPEATS.sub(r"\1\1", value).strip()

    def risk_score(self, text: object) -> tuple[int, list[str]]:
        raw = _coerce(text)
        lowered = raw.lower()
        score = 0
        hits: list[str] = []
        for name, pattern in RULES:
            if pattern.search(lowered):
                score += self.config.rule_weight
                hits.append(name)

        link_count = len(_LINKS.findall(lowered))
        score += min(link_count * self.config.link_weight, self.config.link_cap)
        score += min(len(_ANGLES.findall(raw)), self.config.angle_cap)
        return score, hits

    def client_check(self, text: object) -> ClientCheck:
        """Run the pre-send scan and report at most `max_reasons` rule hits."""

        result = self.scan(text)
        if not result.accepted:
            return ClientCheck(
                ok=False, reasons=result.triggered_rules[: self.config.max_reasons]
            )
        return ClientCheck(ok=True, sanitized=result.sanitized)


def _coerce(text: object) -> str:
    if text is None:
        return ""
    return text if isinstance(text, str) else str(text)


def _normalize(text: str) -> str:
    try:
        return unicodedata.normalize("NFKC", text)
    except (TypeError, ValueError):
        return text


def _scrub_markup(text: str) -> str:
    out = _ON_ATTR.sub("", text)
    out = _TAGS.sub("", out)
    out = _IMPORT_AT_RULE.sub("", out)
    out = _CSS_URL.sub(_neutralize_css_url, out)
    return _DANGEROUS_PROTOCOLS.sub(_PLACEHOLDER_SCHEME, out)


def _neutralize_css_url(match: re.Match[str]) -> str:
    target = re.sub(r"\s", "", match.group(2) or "")
    if _DANGEROUS_PROTOCOLS.search(target):
        return _PLACEHOLDER_URL
    return match.group(0)


def _escape_angles(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")
