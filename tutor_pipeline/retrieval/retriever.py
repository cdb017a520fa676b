"""Retrieval index adapters and the knowledge-availability check.

Architectural role:
    Defines the `RetrievalIndex` contract consumed by the intent classifier and the
    tier router, and a FAISS-backed implementation with one inner-product index
    per scope (course/topic).

Retrieval and ranking model:
    Embeddings are L2-normalized, so inner product equals cosine similarity.
    Results are ordered by descending score.

Failure model:
    - An unknown or empty scope returns `[]`.
    - An index that cannot be queried raises `RetrievalUnavailable`. Callers
      distinguish the two.

Persistence:
    When `directory` is set, each scope is stored as `<scope>.index` (FAISS) plus
    `<scope>.json` (passage text and metadata), both written atomically.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Protocol

import faiss
import numpy as np

from tutor_pipeline.core.errors import RetrievalUnavailable
from tutor_pipeline.core.routing_types import Passage


logger = logging.getLogger(__name__)


class RetrievalIndex(Protocol):
    async def search(self, embedding: np.ndarray, scope: str, top_k: int) -> list[Passage]: ...


def atomic_json_save(path, data):
    """Persist JSON data atomically via temporary file replacement.

    Side effects:
        Writes `<path>.tmp` and atomically replaces `path`.
    """
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


def _scope_filename(scope: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", scope) or "global"


class FaissRetrievalIndex:
    """Per-scope `IndexFlatIP` with JSON passage metadata."""

    def __init__(self, dimension: int, directory: str | None = None) -> None:
        self.dimension = dimension
        self.directory = directory
        self._indexes: dict[str, faiss.IndexFlatIP] = {}
        self._passages: dict[str, list[dict[str, Any]]] = {}

    def load(self) -> None:
        """Load every persisted scope from `directory`."""
        if not self.directory or not os.path.isdir(self.directory):
            return

        for name in os.listdir(self.directory):
            if not name.endswith(".json"):
                continue
            meta_path = os.path.join(self.directory, name)
            index_path = meta_path[: -len(".json")] + ".index"
            if not os.path.exists(index_path):
                continue
            with open(meta_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            scope = payload.get("scope") or name[: -len(".json")]
            self._indexes[scope] = faiss.read_index(index_path)
            self._passages[scope] = payload.get("passages", [])
            logger.info("Loaded retrieval scope=%s passages=%d", scope, len(self._passages[scope]))

    def add_passages(
        self,
        scope: str,
        texts: list[str],
        embeddings: np.ndarray,
        metadata: list[dict[str, Any]] | None = None,
    ) -> int:
        """Append passages to a scope and persist it.

        Returns:
            Number of passages in the scope after the append.
        """
        if not texts:
            return len(self._passages.get(scope, []))

        vectors = np.ascontiguousarray(np.atleast_2d(embeddings), dtype="float32")
        if vectors.shape != (len(texts), self.dimension):
            raise ValueError(
                f"expected embeddings of shape ({len(texts)}, {self.dimension}), got {vectors.shape}"
            )
        faiss.normalize_L2(vectors)

        index = self._indexes.setdefault(scope, faiss.IndexFlatIP(self.dimension))
        index.add(vectors)

        rows = self._passages.setdefault(scope, [])
        metadata = metadata or [{} for _ in texts]
        for text, meta in zip(texts, metadata):
            rows.append({"text": text, "metadata": dict(meta)})

        self._persist(scope)
        return len(rows)

    def _persist(self, scope: str) -> None:
        if not self.directory:
            return
        os.makedirs(self.directory, exist_ok=True)
        base = os.path.join(self.directory, _scope_filename(scope))
        faiss.write_index(self._indexes[scope], base + ".index.tmp")
        os.replace(base + ".index.tmp", base + ".index")
        atomic_json_save(base + ".json", {"scope": scope, "passages": self._passages[scope]})

    async def search(self, embedding: np.ndarray, scope: str, top_k: int) -> list[Passage]:
        """Return up to `top_k` passages of `scope`, best first.

        Raises:
            RetrievalUnavailable: When the FAISS search itself fails.
        """
        index = self._indexes.get(scope)
        if index is None or index.ntotal == 0 or top_k <= 0:
            return []

        query = np.ascontiguousarray(np.atleast_2d(embedding), dtype="float32")
        faiss.normalize_L2(query)

        try:
            scores, ids = await asyncio.to_thread(index.search, query, min(top_k, index.ntotal))
        except (RuntimeError, AssertionError) as exc:
            raise RetrievalUnavailable(f"retrieval failed for scope={scope}: {exc}") from exc

        rows = self._passages.get(scope, [])
        passages = []
        for score, idx in zip(scores[0], ids[0]):
            if idx < 0 or idx >= len(rows):
                continue
            row = rows[idx]
            passages.append(Passage(row["text"], float(score), dict(row.get("metadata") or {})))
        return passages


# =========================================================
# KNOWLEDGE AVAILABILITY
# =========================================================

@dataclass
class KnowledgeAvailability:
    available: bool
    best_score: float | None
    reason: str | None
    passages: list[Passage]


async def check_knowledge_availability(
    index: RetrievalIndex | None,
    embedding: np.ndarray,
    scope: str,
    *,
    top_k: int = 3,
    relevance_floor: float = 0.5,
) -> KnowledgeAvailability:
    """Probe the index before committing a turn to the RAG path.

    Returns:
        `KnowledgeAvailability`. `reason` is one of `index_unavailable`,
        `index_empty`, `low_relevance`, or `None` when available.
    """
    if index is None:
        return KnowledgeAvailability(False, None, "index_unavailable", [])

    try:
        passages = await index.search(embedding, scope, top_k)
    except RetrievalUnavailable as exc:
        logger.warning("Knowledge check failed scope=%s: %s", scope, exc)
        return KnowledgeAvailability(False, None, "index_unavailable", [])

    if not passages:
        return KnowledgeAvailability(False, None, "index_empty", [])

    best = max(p.score for p in passages)
    if best < relevance_floor:
        return KnowledgeAvailability(False, best, "low_relevance", passages)

    return KnowledgeAvailability(True, best, None, passages)
