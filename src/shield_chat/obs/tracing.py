"""Resolution traces, per-tier accounting, and groundedness scoring."""

from __future__ import annotations

import re
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shield_chat.retrieval.index import tokenize

_CITATION_PATTERN = re.compile(r"\[#([^\]\s]+)\]")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?:])\s+|\n{2,}")


@dataclass(slots=True)
class ResolutionTrace:
    trace_id: str
    timestamp_utc: str
    query: str
    answer: str
    source: str
    status: str
    citations: list[str]
    source_snippets: list[str]
    guardrails: list[str]
    cost_units: int
    latency_ms: float
    groundedness: float
    unsupported: list[str] = field(default_factory=list)


class GroundednessEvaluator:
    """Share of answer sentences supported by at least one source snippet.

    Citation markers are removed before comparison and lead-in lines ending
    with `:` are not scored. A sentence is supported when at least
    `min_overlap` of its distinct terms occur in one snippet.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        scored = self._scored_sentences(answer)
        if not scored:
            return 1.0
        if not source_snippets:
            return 0.0
        unsupported = self._unsupported(scored, source_snippets)
        return (len(scored) - len(unsupported)) / len(scored)

    def unsupported(self, answer: str, source_snippets: list[str]) -> list[str]:
        scored = self._scored_sentences(answer)
        if not source_snippets:
            return [sentence for sentence, _ in scored]
        return self._unsupported(scored, source_snippets)

    def _unsupported(
        self, scored: list[tuple[str, set[str]]], source_snippets: list[str]
    ) -> list[str]:
        sources = [set(tokenize(snippet)) for snippet in source_snippets]
        return [
            sentence
            for sentence, terms in scored
            if not any(len(terms & source) / len(terms) >= self.min_overlap for source in sources)
        ]

    @staticmethod
    def _scored_sentences(answer: str) -> list[tuple[str, set[str]]]:
        scored: list[tuple[str, set[str]]] = []
        for piece in _SENTENCE_BREAK.split(answer or ""):
            sentence = _CITATION_PATTERN.sub("", piece).strip()
            terms = set(tokenize(sentence))
            if terms and not sentence.endswith(":"):
                scored.append((sentence, terms))
        return scored


class TraceStore:
    """Bounded in-memory trace log; the oldest record is evicted first."""

    def __init__(
        self,
        *,
        groundedness_evaluator: GroundednessEvaluator | None = None,
        max_records: int = 1000,
    ) -> None:
        self._records: OrderedDict[str, ResolutionTrace] = OrderedDict()
        self._evaluator = groundedness_evaluator or GroundednessEvaluator()
        self.max_records = max_records

    def create_record(
        self,
        *,
        query: str,
        answer: str,
        source: str,
        status: str,
        citations: list[str],
        source_snippets: list[str],
        guardrails: list[str],
        cost_units: int,
        latency_ms: float,
    ) -> ResolutionTrace:
        if answer:
            groundedness = self._evaluator.score(answer, source_snippets)
            unsupported = self._evaluator.unsupported(answer, source_snippets)
        else:
            groundedness, unsupported = 0.0, []

        record = ResolutionTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=query,
            answer=answer,
            source=source,
            status=status,
            citations=list(citations),
            source_snippets=list(source_snippets),
            guardrails=list(guardrails),
            cost_units=cost_units,
            latency_ms=latency_ms,
            groundedness=groundedness,
            unsupported=unsupported,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self.max_records:
            self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> ResolutionTrace:
        try:
            return self._records[trace_id]
        except KeyError:
            raise KeyError(f"Trace not found: {trace_id}") from None

    def list_recent(self, limit: int = 20) -> list[ResolutionTrace]:
        if limit <= 0:
            return []
        return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, object]:
        """Request count, latency, groundedness and spend, split by tier and status."""
        records = list(self._records.values())
        latencies = sorted(record.latency_ms for record in records)
        grounded = [record.groundedness for record in records if record.answer]
        return {
            "total_requests": len(records),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
            "p95_latency_ms": _percentile(latencies, 0.95),
            "avg_groundedness": sum(grounded) / len(grounded) if grounded else 0.0,
            "total_cost_units": sum(record.cost_units for record in records),
            "by_source": dict(Counter(record.source for record in records)),
            "by_status": dict(Counter(record.status for record in records)),
            "guardrails": dict(Counter(code for record in records for code in record.guardrails)),
        }


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self.started = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self.started = time.perf_counter()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.elapsed_ms = self.lap_ms()

    def lap_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0


def extract_citations(answer: str) -> list[str]:
    """Passage ids cited as `[#id]`, first occurrence order, without duplicates."""
    return list(dict.fromkeys(_CITATION_PATTERN.findall(answer or "")))


def _percentile(ordered: list[float], fraction: float) -> float:
    if not ordered:
        return 0.0
    return ordered[max(0, int(len(ordered) * fraction) - 1)]
