"""Corpus pack loading and the lazily-built shared index."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from shield_chat.config import RetrievalConfig
from shield_chat.retrieval.index import RetrievalIndex
from shield_chat.types import Passage

logger = logging.getLogger(__name__)


class CorpusUnavailableError(RuntimeError):
    """The corpus pack could not be read or parsed."""


def parse_corpus(payload: Any) -> list[Passage]:
    """Flatten `{docs: [{language, title, url, chunks: [{id, text}]}]}`."""

    if not isinstance(payload, dict):
        raise CorpusUnavailableError("corpus pack must be a JSON object")
    docs = payload.get("docs") or []
    if not isinstance(docs, list):
        raise CorpusUnavailableError("corpus pack `docs` must be a list")

    passages: list[Passage] = []
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        language = str(doc.get("language") or doc.get("lang") or "")
        title = str(doc.get("title") or "")
        url = str(doc.get("url") or "")
        for chunk in doc.get("chunks") or []:
            if not isinstance(chunk, dict) or not chunk.get("id"):
                continue
            passages.append(
                Passage(
                    passage_id=str(chunk["id"]),
                    text=str(chunk.get("text") or ""),
                    language=language,
                    source_title=title,
                    source_url=url,
                )
            )
    return passages


def load_corpus(path: str | Path) -> list[Passage]:
    file_path = Path(path)
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CorpusUnavailableError(f"cannot load corpus pack {file_path}: {exc}") from exc
    return parse_corpus(payload)


class CorpusIndex:
    """Builds the retrieval index on first use and caches it for the process.

    A failed load is not cached, so the next request retries. A successful
    build is never rebuilt or partially updated.
    """

    def __init__(
        self,
        source: Callable[[], list[Passage]],
        config: RetrievalConfig | None = None,
    ) -> None:
        self._source = source
        self.config = config or RetrievalConfig()
        self._index: RetrievalIndex | None = None

    @classmethod
    def from_path(
        cls, path: str | Path, config: RetrievalConfig | None = None
    ) -> "CorpusIndex":
        return cls(lambda: load_corpus(path), config)

    @classmethod
    def from_passages(
        cls, passages: list[Passage], config: RetrievalConfig | None = None
    ) -> "CorpusIndex":
        frozen = list(passages)
        return cls(lambda: frozen, config)

    @property
    def loaded(self) -> bool:
        return self._index is not None

    def get(self) -> RetrievalIndex:
        if self._index is None:
            passages = self._source()
            self._index = RetrievalIndex.build(passages, self.config)
            logger.info(
                "Built retrieval index: %d passages, version %s",
                len(self._index),
                self._index.version[:12],
            )
        return self._index
