"""Lexical retrieval index with BM25 and term-overlap ranking."""

from __future__ import annotations

import math
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from hashlib import sha1

from shield_chat.config import RetrievalConfig
from shield_chat.types import Passage, ScoredPassage

_TOKEN_PATTERN = re.compile(r"[a-z0-9à-öø-ÿ]+")


class RankingMethod(str, Enum):
    """Cost/quality switch for the single ranking entry point."""

    BM25 = "bm25"
    OVERLAP = "overlap"


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric runs, accented Latin letters included."""
    try:
        normalized = unicodedata.normalize("NFKC", text or "")
    except (TypeError, ValueError):
        normalized = text or ""
    return _TOKEN_PATTERN.findall(normalized.lower())


@dataclass(frozen=True, slots=True)
class _IndexedPassage:
    passage: Passage
    term_counts: Counter[str]
    length: int


@dataclass(frozen=True, slots=True)
class RetrievalIndex:
    """Read-only snapshot derived from exactly one corpus version.

    Holds per-passage term multisets, corpus-wide document frequencies, the
    average passage length and the IDF table. Build a new snapshot to change
    the corpus; a snapshot is never updated in place.
    """

    entries: tuple[_IndexedPassage, ...]
    document_frequency: dict[str, int]
    idf: dict[str, float]
    avgdl: float
    version: str
    config: RetrievalConfig

    @classmethod
    def build(
        cls, passages: list[Passage], config: RetrievalConfig | None = None
    ) -> "RetrievalIndex":
        cfg = config or RetrievalConfig()
        entries: list[_IndexedPassage] = []
        df: Counter[str] = Counter()
        total_length = 0
        digest = sha1()

        for passage in passages:
            tokens = tokenize(passage.text)
            entries.append(
                _IndexedPassage(passage=passage, term_counts=Counter(tokens), length=len(tokens))
            )
            total_length += len(tokens)
            df.update(set(tokens))
            digest.update(f"{passage.passage_id}\x1f{passage.text}\x1e".encode("utf-8"))

        n = len(entries) or 1
        idf = {term: math.log(1 + (n - count + 0.5) / (count + 0.5)) for term, count in df.items()}
        return cls(
            entries=tuple(entries),
            document_frequency=dict(df),
            idf=idf,
            avgdl=total_length / n,
            version=digest.hexdigest(),
            config=cfg,
        )

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def passages(self) -> list[Passage]:
        return [entry.passage for entry in self.entries]

    def rank(
        self,
        query: str,
        language: str | None = None,
        *,
        method: RankingMethod = RankingMethod.BM25,
        limit: int | None = None,
    ) -> list[ScoredPassage]:
        """Rank passages in `language` (or untagged) against `query`.

        Every candidate is returned, zero scores included. Ties keep corpus
        order.
        """

        terms = tokenize(query)
        if method is RankingMethod.OVERLAP:
            scorer = self._overlap
        else:
            scorer = self._bm25

        scored = [
            (entry.passage, scorer(terms, entry))
            for entry in self.entries
            if _language_match(entry.passage, language)
        ]
        ranked = sorted(scored, key=lambda item: item[1], reverse=True)
        if limit is not None:
            ranked = ranked[:limit]
        return [
            ScoredPassage(passage=passage, score=score, rank=i + 1)
            for i, (passage, score) in enumerate(ranked)
        ]

    def score(self, query: str, language: str | None = None) -> list[ScoredPassage]:
        return self.rank(query, language, method=RankingMethod.BM25)

    def strong_passages(
        self, query: str, language: str | None = None, *, limit: int = 4
    ) -> list[ScoredPassage]:
        """Cheap term-overlap selection used to ground generative tiers."""

        ranked = self.rank(query, language, method=RankingMethod.OVERLAP)
        strong = [
            item
            for item in ranked
            if item.score > 0 and item.score >= self.config.overlap_min
        ]
        return strong[:limit]

    def _bm25(self, terms: list[str], entry: _IndexedPassage) -> float:
        if not terms:
            return 0.0
        k1 = self.config.k1
        b = self.config.b
        length = entry.length or 1
        avgdl = self.avgdl or 1.0
        total = 0.0
        for term in terms:
            idf = self.idf.get(term)
            tf = entry.term_counts.get(term, 0)
            if not idf or not tf:
                continue
            total += idf * (tf * (k1 + 1)) / (tf + k1 * (1 - b + b * (length / avgdl)))
        return total

    @staticmethod
    def _overlap(terms: list[str], entry: _IndexedPassage) -> float:
        unique = set(terms)
        if not unique:
            return 0.0
        matched = sum(1 for term in unique if entry.term_counts.get(term))
        return matched / len(unique)


def _language_match(passage: Passage, language: str | None) -> bool:
    if not language or not passage.language:
        return True
    return passage.language == language
