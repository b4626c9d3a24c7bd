"""Extractive drafter: answers only with verbatim passages plus citations."""

from __future__ import annotations

from shield_chat.config import RetrievalConfig
from shield_chat.retrieval.corpus import CorpusIndex
from shield_chat.types import Draft, ScoredPassage

LEAD_INS = {
    "en": "Based on retrieved content:",
    "es": "Basado en el contenido recuperado:",
}


def citation_marker(passage_id: str) -> str:
    return f"[#{passage_id}]"


class ExtractiveDrafter:
    """Composes a grounded answer from the BM25 top passages, or declines.

    The drafter never paraphrases. It gates on two signals over the top
    `top_k` passages: the best score must reach `bm25_min`, and at least
    `coverage_needed` passages must reach it too. When the gate fails the
    caller falls through to the next tier.
    """

    def __init__(self, corpus: CorpusIndex, config: RetrievalConfig | None = None) -> None:
        self.corpus = corpus
        self.config = config or corpus.config

    def draft(
        self,
        query: str,
        language: str | None = None,
        *,
        bm25_min: float | None = None,
        coverage_needed: int | None = None,
    ) -> Draft | None:
        threshold = self.config.bm25_min if bm25_min is None else bm25_min
        needed = self.config.coverage_needed if coverage_needed is None else coverage_needed
        lang = language or self.config.default_language

        index = self.corpus.get()
        scored = [item for item in index.score(query, lang) if item.score > 0]
        top = scored[: self.config.top_k]

        best = top[0].score if top else 0.0
        coverage = sum(1 for item in top if item.score >= threshold)
        if best < threshold or coverage < needed:
            return None

        strong = [item for item in top if item.score >= threshold][: self.config.max_passages]
        return Draft(answer=compose_extractive(strong, lang), passages=strong)


def compose_extractive(passages: list[ScoredPassage], language: str) -> str:
    lead_in = LEAD_INS.get(language, LEAD_INS["en"])
    lines = [f"{item.passage.text} {citation_marker(item.passage.passage_id)}" for item in passages]
    return lead_in + "\n\n" + "\n\n".join(lines)
