"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Mode(str, Enum):
    """Which answer tiers a resolution may use."""

    LOCAL = "local"
    HYBRID = "hybrid"
    EXTERNAL = "external"

    @classmethod
    def normalize(cls, value: str | None) -> "Mode":
        if value in (cls.LOCAL.value, cls.EXTERNAL.value):
            return cls(value)
        return cls.HYBRID


class Tier(str, Enum):
    """Answer source a resolution settled on."""

    EXTRACTIVE = "extractive"
    LOCAL = "local"
    REMOTE = "remote"
    NONE = "none"


class Severity(str, Enum):
    WARN = "warn"
    ERROR = "error"


class StreamEventKind(str, Enum):
    CONTENT = "content"
    CONTROL = "control"
    END = "end"


@dataclass(slots=True)
class Message:
    """One conversation turn."""

    role: str
    content: str
    language: str = "en"

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content, "lang": self.language}


@dataclass(frozen=True, slots=True)
class Passage:
    """An immutable corpus passage."""

    passage_id: str
    text: str
    language: str = ""
    source_title: str = ""
    source_url: str = ""


@dataclass(slots=True)
class ScoredPassage:
    """A ranking result with score and 1-based rank."""

    passage: Passage
    score: float
    rank: int = 0


@dataclass(slots=True)
class ScanResult:
    """Outcome of a content-safety scan."""

    accepted: bool
    sanitized: str
    risk_score: int
    triggered_rules: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class GuardrailSignal:
    """A warning or error surfaced to the caller."""

    severity: Severity
    code: str
    message: str

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One decoded event from the incremental text-event protocol."""

    kind: StreamEventKind
    payload: Any = None


@dataclass(slots=True)
class Draft:
    """An extractive answer and the passages it was composed from."""

    answer: str
    passages: list[ScoredPassage]

    @property
    def citations(self) -> list[str]:
        return [item.passage.passage_id for item in self.passages]


@dataclass(slots=True)
class Resolution:
    """Settled result of one resolution call."""

    source: Tier
    answer: str
    status: str
    guardrails: list[GuardrailSignal] = field(default_factory=list)
    citations: list[str] = field(default_factory=list)
    cost: int = 0
    trace_id: str | None = None

    @property
    def answered(self) -> bool:
        return self.source is not Tier.NONE and bool(self.answer)


@dataclass(frozen=True, slots=True)
class ResolutionUpdate:
    """One item of the pull-based resolution stream.

    `kind` is one of `status`, `token`, `guardrail` or `settled`.
    """

    kind: str
    status: str | None = None
    text: str = ""
    tier: Tier | None = None
    signal: GuardrailSignal | None = None
    resolution: Resolution | None = None
    progress: int | None = None
